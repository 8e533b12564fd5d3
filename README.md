# memsim

`memsim` is the memory component of a teaching operating-system simulator.
It keeps a block of user memory split into fixed-size frames, gives each
process a multi-level page table, moves pages to and from a swap file, and
answers requests from a kernel and from CPUs over TCP using a small binary
packet protocol.

## Installing

```
pip install .
```

For running the tests:

```
pip install ".[test]"
pytest
```

## Running the server

```
memsim [CONFIG]
```

The server reads its configuration from `CONFIG`, or from `memoria.config`
in the current directory when no path is given, and logs to `memoria.log`
as well as to the console. It serves until interrupted with Ctrl-C.

The configuration is a plain `KEY=VALUE` file; blank lines and lines
starting with `#` are ignored:

```
PUERTO_ESCUCHA=8002
TAM_MEMORIA=4096
TAM_PAGINA=64
ENTRADAS_POR_TABLA=4
CANTIDAD_NIVELES=3
RETARDO_MEMORIA=100
PATH_SWAPFILE=/tmp/swapfile.bin
RETARDO_SWAP=100
LOG_LEVEL=TRACE
DUMP_PATH=/tmp/dump_files/
PATH_INSTRUCCIONES=/tmp/instrucciones/
CANTIDAD_MARCOS_SWAP=64
```

- `PUERTO_ESCUCHA` is the TCP port the server listens on, on every interface.
- `TAM_MEMORIA` / `TAM_PAGINA` give the number of frames in user memory.
- `ENTRADAS_POR_TABLA` and `CANTIDAD_NIVELES` shape each process's page
  table; `ENTRADAS_POR_TABLA` is expected to be a power of two.
- `RETARDO_MEMORIA` is the delay, in milliseconds, applied to every memory
  access, page-table level walked and instruction fetch.
- `PATH_SWAPFILE` is created, or grown with zeros, to hold
  `CANTIDAD_MARCOS_SWAP` frames of `TAM_PAGINA` bytes.
- `RETARDO_SWAP` must be present and an integer, but no delay is applied
  to swap accesses.
- `LOG_LEVEL` is one of `TRACE`, `DEBUG`, `INFO`, `WARNING`, `ERROR`.
- `PATH_INSTRUCCIONES` is prefixed (as plain text, so keep the trailing `/`)
  to the file name sent when a process is created; each line of that file
  is one instruction.
- `DUMP_PATH` is prefixed to memory dump file names,
  `<pid>-<YYYYmmddHHMMSS>.dmp`.

A missing key or a non-integer value where a number is expected raises
`memsim.config.ConfigError`.

## The protocol

Every packet is an operation code, a payload length, and a payload made of
length-prefixed items, all lengths and integers being native 32-bit values
(`memsim.protocol.Packet`, `OpCode`, `deserialize`, `send_packet`,
`recv_operation`, `recv_packet_items`).

A client first sends a handshake code:

- `HANDSHAKE` (kernel): the server answers with a bare `OK` code, serves one
  request and closes the connection.
- `HANDSHAKE_CPU_MEMORY` (CPU): the server answers with an `OK` packet
  holding entries per table, page size and number of levels, then serves
  requests until the CPU disconnects.

Kernel requests:

| Operation | Items | Reply |
|---|---|---|
| `INIT` | pid, size, file name | `OK`, or `ERROR` if the process cannot be created |
| `SPACE_AVAILABLE` | pid, size | `OK` if the pid already exists or the size fits in free frames, else `NO` |
| `KILL_PROCESS` | pid | `OK` |
| `DUMP_MEMORY_REQUEST` | pid | `MEMORY_DUMP` once the dump file is written |
| `SUSPEND` | pid | none |
| `UNSUSPEND` | pid | `OK` |

CPU requests:

| Operation | Items | Reply |
|---|---|---|
| `FETCH` | pid, pc | `PACKET` with the instruction text, or `ERROR` past the last instruction; waits until the pid has been created |
| `READ` | address, size, pid | `READ` with the bytes, or `ERROR` |
| `WRITE` | address, NUL-terminated data, pid | none |
| `FRAME` | pid, page | `FRAME` with the frame number, `-1` if unknown |
| `PAGE_READ` | pid, address | `PAGE_READ` with the whole page, or `ERROR` |
| `PAGE_WRITE` | pid, address, page data | `OK`, or `ERROR` |

## Using it as a library

The pieces can also be driven directly from Python:

```python
from memsim.config import load_config
from memsim.memory import MemoryManager
from memsim import access

config = load_config("memoria.config")
manager = MemoryManager(config)          # also initialises the swap file

manager.init_process(256, 1, "proceso1") # loads PATH_INSTRUCCIONES + "proceso1"
access.write(manager, 1, 0, b"hello")    # returns the number of bytes written
print(access.read(manager, 1, 0, 5))     # b'hello'
print(access.frame_of(manager, 1, 0))    # frame holding page 0

manager.suspend(1)      # pages go to swap, frames are freed
manager.unsuspend(1)    # pages come back into free frames
path = access.dump(manager, 1)
manager.finalize(1)     # frames, swap slots and instructions are released
```

Unknown pids raise `memsim.memory.ProcessNotFoundError`; out-of-range
physical addresses raise `IndexError`. `MemoryServer` in `memsim.server`
wraps a `MemoryManager` and can be started on any listening socket with
`start()` (background thread) or `serve_forever()`.

## What it does not do

`memsim` is only the memory side of the simulator. It ships no kernel, no
CPU and no client program: the requests above have to come from your own
code, for example built with `memsim.protocol`. Swap accesses are not
delayed, and memory contents are not kept between runs of the server.