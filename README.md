# blekit

Building blocks for Bluetooth Low Energy in pure Python, with no runtime
dependencies.

- `blekit.advertising`: craft and parse advertising and scan-response
  payloads (flags, names, service UUID lists, service data, manufacturer
  data, iBeacon frames).
- `blekit.att.pdu`: ATT opcodes, request/response pairing and Error Response
  PDUs.
- `blekit.att.client`: an ATT client (`Client`) speaking over a connection
  object you supply.
- `blekit.attribute`: the GATT model, `Service`, `Characteristic` and
  `Descriptor`, with read, write, notify and indicate handlers.
- `blekit.att.db`: `DB`, the attribute table laid out from services.
- `blekit.att.server`: `Server`, answering ATT requests from a `DB`.
- `blekit.handler`: `Request`, `ResponseWriter` and `Notifier`, as passed to
  handlers.
- `blekit.gatt`: the abstract `Device` and `Advertisement`, and module-level
  helpers (`scan`, `find`, `dial`, `connect`, `advertise_name_and_services`,
  ...) acting on a device set with `set_default_device`.
- `blekit.context`: `Context`, a cancellation scope with timeouts and values,
  ending with `Cancelled` or `DeadlineExceeded`.
- `blekit.samples`: ready-made `new_battery_service()`, `new_count_char()`
  and `new_echo_char()`.
- `blekit.addr`, `blekit.const`, `blekit.errors`: addresses, MTU limits and
  well-known UUIDs, and ATT error codes.

UUIDs are plain `bytes` in little-endian order, as they travel over the air;
`blekit.const.uuid16(0x180F)` gives `b"\x0f\x18"`.

## Advertising packets

```python
from blekit.advertising import new_packet, flags, complete_name, manufacturer_data

packet = new_packet(
    flags(0x06),
    complete_name("Gopher"),
    manufacturer_data(0x004C, b"\x02\x15"),
)

print(len(packet))          # size of the payload in bytes
print(packet.local_name())  # "Gopher"
print(bytes(packet).hex())
```

A packet holds at most 31 bytes; a field that does not fit raises
`NotFitError` and leaves the packet as it was.

Parsing works on raw bytes as received from a scan:

```python
from blekit.advertising import Packet

packet = Packet(bytes.fromhex("0201060709476f70686572"))
print(packet.flags())       # 6
print(packet.local_name())  # "Gopher"
print(packet.uuids())       # []
```

## Serving a GATT database

`Server` works on any connection object with `read(size)` (returning empty
bytes at end of stream), `write(data)` and settable `rx_mtu` and `tx_mtu`
attributes. `Server.loop()` reads and answers requests until the connection
ends; `Server.handle_request()` answers a single PDU:

```python
from blekit.att.db import DB
from blekit.att.server import Server
from blekit.samples import new_battery_service


class Link:
    rx_mtu = 23
    tx_mtu = 23

    def read(self, size):
        return b""

    def write(self, data):
        print(data.hex())


db = DB([new_battery_service()], 1)
server = Server(db, Link())

# Read Request for handle 3, the battery level value.
print(server.handle_request(bytes([0x0A, 0x03, 0x00])).hex())  # "0b64"
```

Characteristics with a notify or indicate handler get a Client
Characteristic Configuration descriptor when the `DB` is built; writing it
starts the handler in its own thread with a `Notifier`.

## ATT client

`Client(conn, handler)` takes the same kind of connection object. Run
`Client.loop()` in a thread so that responses reach pending requests, then
call `exchange_mtu`, `find_information`, `read_by_type`, `read`,
`read_blob`, `read_multiple`, `read_by_group_type`, `write`,
`write_command`, `signed_write`, `prepare_write` or `execute_write`. A peer's
Error Response raises `AttError`; a malformed response raises
`InvalidResponseError`; no answer within 30 seconds raises
`RequestTimeoutError`. `handler` is called with each notification or
indication PDU.

## Addresses and errors

```python
from blekit.addr import new_addr
from blekit.errors import att_error_message

print(str(new_addr("00:00:00:AA:BB:CC")))  # "00:00:00:aa:bb:cc"
print(att_error_message(0x0A))             # "attribute not found"
print(att_error_message(0x85))             # "application error code (0x85)"
```

## What blekit does not do

blekit does not talk to a Bluetooth controller. There is no HCI or L2CAP
transport and no concrete `Device`: to scan, advertise or dial through
`blekit.gatt`, supply your own `Device` subclass and pass it to
`set_default_device`. `Client` and `Server` need a connection object from
elsewhere. There is no command-line tool.

## Running the tests

Install the `test` extra and run pytest from the project root.