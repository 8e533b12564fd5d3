"""Memory server configuration and logging setup."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

_LEVELS = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class ConfigError(ValueError):
    """Raised when a configuration is missing a key or has a bad value."""


def parse_config(text: str) -> dict[str, str]:
    """Parse ``KEY=VALUE`` lines; blank lines and ``#`` comments are skipped."""
    values: dict[str, str] = {}
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        key, sep, value = stripped.partition("=")
        if not sep:
            continue
        values[key.strip()] = value.strip()
    return values


def _get_str(mapping: Mapping[str, str], key: str) -> str:
    try:
        return mapping[key]
    except KeyError:
        raise ConfigError(f"missing configuration key {key}") from None


def _get_int(mapping: Mapping[str, str], key: str) -> int:
    raw = _get_str(mapping, key)
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"configuration key {key} is not an integer: {raw!r}") from None


@dataclass(frozen=True)
class MemoryConfig:
    """Settings of the memory server."""

    listen_port: str
    memory_size: int
    page_size: int
    entries_per_table: int
    levels: int
    memory_delay: int
    swapfile_path: str
    swap_delay: int
    log_level: str
    dump_path: str
    instructions_path: str
    swap_frames: int

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, str]) -> MemoryConfig:
        """Build a configuration from the raw keys of a config file."""
        return cls(
            listen_port=_get_str(mapping, "PUERTO_ESCUCHA"),
            memory_size=_get_int(mapping, "TAM_MEMORIA"),
            page_size=_get_int(mapping, "TAM_PAGINA"),
            entries_per_table=_get_int(mapping, "ENTRADAS_POR_TABLA"),
            levels=_get_int(mapping, "CANTIDAD_NIVELES"),
            memory_delay=_get_int(mapping, "RETARDO_MEMORIA"),
            swapfile_path=_get_str(mapping, "PATH_SWAPFILE"),
            swap_delay=_get_int(mapping, "RETARDO_SWAP"),
            log_level=_get_str(mapping, "LOG_LEVEL"),
            dump_path=_get_str(mapping, "DUMP_PATH"),
            instructions_path=_get_str(mapping, "PATH_INSTRUCCIONES"),
            swap_frames=_get_int(mapping, "CANTIDAD_MARCOS_SWAP"),
        )

    def frame_count(self) -> int:
        """Number of frames in user memory."""
        return self.memory_size // self.page_size


def load_config(path: str | Path = "memoria.config") -> MemoryConfig:
    """Read and parse a configuration file."""
    return MemoryConfig.from_mapping(parse_config(Path(path).read_text()))


def create_logger(level: str, path: str | Path = "memoria.log") -> logging.Logger:
    """Create the server logger writing to the console and to ``path``."""
    try:
        numeric = _LEVELS[level.strip().upper()]
    except KeyError:
        raise ConfigError(f"unknown log level {level!r}") from None

    logger = logging.getLogger("LogMem")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.setLevel(numeric)
    logger.propagate = False

    formatter = logging.Formatter(
        "[%(levelname)s] %(asctime)s LogMem/(%(process)d:%(thread)d): %(message)s"
    )
    for handler in (logging.FileHandler(path), logging.StreamHandler()):
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    logger.log(TRACE, "memory logger ready")
    return logger