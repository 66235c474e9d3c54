import pytest

from conftest import CACHE_FIELD, CACHE_TYPE, FakeHost
from dotnetrestore import net_exceptions
from dotnetrestore.net_harvest import CacheHarvester, RuntimeCacheEntry


def harvest(entries, type_name=CACHE_TYPE, field_name=CACHE_FIELD):
    host = FakeHost(entries)
    with host:
        return CacheHarvester(host, type_name, field_name).harvest()


def test_entries_keep_cache_order():
    entries = harvest([(0x402051, b'\x2a'), (0, b'\x00'), (0x4020B4, b'\x02\x2a')])
    assert [entry.get_key() for entry in entries] == [0x402051, 0, 0x4020B4]
    assert [entry.get_blob() for entry in entries] == [b'\x2a', b'\x00', b'\x02\x2a']
    assert [entry.is_sentinel() for entry in entries] == [False, True, False]


def test_wrapped_value_uses_its_byte_array_field():
    entries = harvest([(0x402051, [('code', b'\x2a')])])
    assert entries[0].get_blob() == b'\x2a'


def test_several_byte_array_fields_use_the_first_and_warn(capsys):
    entries = harvest([(0x402051, [('code', b'\x2a'), ('extra', b'\x00\x00')])])
    assert entries[0].get_blob() == b'\x2a'
    output = capsys.readouterr().out
    assert 'code' in output
    assert 'extra' in output


def test_value_without_byte_array_field_gives_empty_blob(capsys):
    entries = harvest([(0x402051, [])])
    assert entries[0].get_blob() == b''
    assert 'no byte[] field' in capsys.readouterr().out


def test_missing_type_is_fatal():
    with pytest.raises(net_exceptions.CacheTypeNotFoundException):
        harvest([(0x402051, b'\x2a')], type_name='Demo.Missing')


def test_missing_field_is_fatal():
    with pytest.raises(net_exceptions.CacheFieldNotFoundException):
        harvest([(0x402051, b'\x2a')], field_name='missing')


def test_entry_blob_is_immutable_bytes():
    entry = RuntimeCacheEntry(1, bytearray(b'\x2a'))
    assert isinstance(entry.get_blob(), bytes)
