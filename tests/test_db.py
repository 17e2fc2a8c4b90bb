import threading

import pytest

from blekit.att.db import CCC_INDICATE, CCC_NOTIFY, DB
from blekit.attribute import Characteristic, Property, Service
from blekit.const import (
    CHARACTERISTIC_UUID,
    CLIENT_CHARACTERISTIC_CONFIG_UUID,
    PRIMARY_SERVICE_UUID,
    uuid16,
)
from blekit.errors import ATTError
from blekit.handler import Request, ResponseWriter


class FakeConn:
    def __init__(self):
        self.cccs = {}
        self.notifiers = {}
        self.indicators = {}
        self.sent = []

    def notify(self, handle, data):
        self.sent.append(("n", handle, bytes(data)))
        return len(data)

    def indicate(self, handle, data):
        self.sent.append(("i", handle, bytes(data)))
        return len(data)


def _reader(req, rsp):
    rsp.write(b"x")


def _two_services():
    s1 = Service(uuid16(0x180F))
    s1.new_characteristic(uuid16(0x2A19)).handle_read(_reader)
    s2 = Service(uuid16(0x180A))
    c = s2.new_characteristic(uuid16(0x2A29)).set_value(b"maker")
    c.new_descriptor(uuid16(0x2901)).set_value(b"desc")
    return s1, s2


def test_handles_are_contiguous_from_base():
    db = DB(list(_two_services()), 5)
    assert [a.handle for a in db] == list(range(5, 5 + len(db)))


def test_service_declarations_and_end_handles():
    s1, s2 = _two_services()
    db = DB([s1, s2], 1)
    attrs = list(db)
    decls = [a for a in attrs if a.typ == PRIMARY_SERVICE_UUID]
    assert [d.value for d in decls] == [s1.uuid, s2.uuid]
    assert decls[0].end_handle == decls[1].handle - 1
    assert decls[-1].end_handle == 0xFFFF


def test_characteristic_declaration_value():
    s1, _ = _two_services()
    DB([s1], 1)
    c = s1.characteristics[0]
    db = DB([s1], 1)
    decl = db.at(c.handle)
    assert decl.typ == CHARACTERISTIC_UUID
    assert decl.value[0] == int(c.property)
    assert int.from_bytes(decl.value[1:3], "little") == c.value_handle
    assert decl.value[3:] == c.uuid
    assert c.value_handle == c.handle + 1


def test_value_attribute_carries_handlers_and_value():
    s1, s2 = _two_services()
    db = DB([s1, s2], 1)
    c1 = s1.characteristics[0]
    c2 = s2.characteristics[0]
    assert db.at(c1.value_handle).read_handler is _reader
    assert db.at(c1.value_handle).value is None
    assert db.at(c2.value_handle).value == b"maker"
    desc = c2.descriptors[0]
    assert db.at(desc.handle).value == b"desc"


def test_at_out_of_range():
    db = DB(list(_two_services()), 3)
    assert db.at(2) is None
    assert db.at(3 + len(db)) is None
    assert db.at(3).typ == PRIMARY_SERVICE_UUID


def test_subrange():
    db = DB(list(_two_services()), 3)
    everything = list(db)
    assert db.subrange(0, 0xFFFF) == everything
    assert db.subrange(4, 5) == everything[1:3]
    assert db.subrange(3 + len(db), 0xFFFF) == []
    assert db.subrange(0, 1) == []


def test_empty_db():
    db = DB([], 1)
    assert len(db) == 0
    assert db.subrange(1, 0xFFFF) == []


def test_cccd_added_only_for_notifiable_and_only_once():
    svc = Service(uuid16(0x1234))
    plain = svc.new_characteristic(uuid16(0x2A00)).set_value(b"v")
    noti = svc.new_characteristic(uuid16(0x2A01)).handle_notify(lambda r, n: None)
    DB([svc], 1)
    db = DB([svc], 1)
    assert plain.cccd is None
    assert [d.uuid for d in noti.descriptors] == [CLIENT_CHARACTERISTIC_CONFIG_UUID]
    assert db.at(noti.cccd.handle).typ == CLIENT_CHARACTERISTIC_CONFIG_UUID


def test_cccd_subscribe_and_unsubscribe_notify():
    started = threading.Event()
    seen = {}

    def on_notify(req, notifier):
        seen["notifier"] = notifier
        notifier.write(b"hi")
        started.set()

    svc = Service(uuid16(0x1234))
    c = svc.new_characteristic(uuid16(0x2A01)).handle_notify(on_notify)
    DB([svc], 1)
    conn = FakeConn()

    rsp = ResponseWriter(8)
    c.cccd.read_handler(Request(conn), rsp)
    assert rsp.getvalue() == b"\x00\x00"

    w = ResponseWriter()
    c.cccd.write_handler(Request(conn, CCC_NOTIFY.to_bytes(2, "little")), w)
    assert w.status == ATTError.SUCCESS
    assert started.wait(2)
    assert conn.cccs[c.handle] == CCC_NOTIFY
    assert conn.sent == [("n", c.value_handle, b"hi")]

    rsp = ResponseWriter(8)
    c.cccd.read_handler(Request(conn), rsp)
    assert rsp.getvalue() == CCC_NOTIFY.to_bytes(2, "little")

    c.cccd.write_handler(Request(conn, b"\x00\x00"), ResponseWriter())
    assert seen["notifier"].closed()
    assert conn.cccs[c.handle] == 0


def test_cccd_indicate_uses_indicate():
    done = threading.Event()

    def on_indicate(req, notifier):
        notifier.write(b"ind")
        done.set()

    svc = Service(uuid16(0x1234))
    c = svc.new_characteristic(uuid16(0x2A01)).handle_indicate(on_indicate)
    DB([svc], 1)
    conn = FakeConn()
    c.cccd.write_handler(Request(conn, CCC_INDICATE.to_bytes(2, "little")), ResponseWriter())
    assert done.wait(2)
    assert conn.sent == [("i", c.value_handle, b"ind")]
    assert c.handle in conn.indicators


def test_cccd_rejects_unsupported_notify():
    svc = Service(uuid16(0x1234))
    c = svc.new_characteristic(uuid16(0x2A01)).handle_indicate(lambda r, n: None)
    DB([svc], 1)
    conn = FakeConn()
    w = ResponseWriter()
    c.cccd.write_handler(Request(conn, CCC_NOTIFY.to_bytes(2, "little")), w)
    assert w.status == ATTError.UNLIKELY
    assert c.handle not in conn.cccs


@pytest.mark.parametrize("data", [b"", b"\x01"])
def test_cccd_short_write(data):
    svc = Service(uuid16(0x1234))
    c = svc.new_characteristic(uuid16(0x2A01)).handle_notify(lambda r, n: None)
    DB([svc], 1)
    w = ResponseWriter()
    c.cccd.write_handler(Request(FakeConn(), data), w)
    assert w.status == ATTError.INVAL_ATTR_VALUE_LEN
    assert Property.NOTIFY in c.property