from types import SimpleNamespace

import pytest

from dotnetrestore import dotnetpefile, net_exceptions, net_host


def test_intptr_keys_are_converted():
    assert net_host._to_int(SimpleNamespace(ToInt64=lambda: 0x4020B4)) == 0x4020B4
    assert net_host._to_int(7) == 7


def test_host_interface_is_abstract():
    host = net_host.HostModule()
    with pytest.raises(net_exceptions.FeatureNotImplementedException):
        host.get_module_base()
    with pytest.raises(net_exceptions.FeatureNotImplementedException):
        host.get_byte_array_fields(None)


def test_clr_host_must_be_opened_first(tmp_path):
    host = net_host.ClrHostModule(str(tmp_path / 'sample.exe'))
    with pytest.raises(net_exceptions.OperationNotSupportedException):
        host.get_module_base()
    assert host.get_byte_array_fields(None) == []


def test_non_pe_data_is_not_a_dotnet_file():
    assert dotnetpefile.try_get_dotnetpe(pe_data=b'not a portable executable') is None


def test_unreadable_file_is_an_io_error(tmp_path):
    with pytest.raises(net_exceptions.DotNetIOException):
        dotnetpefile.DotNetPeFile(file_path=str(tmp_path / 'missing.exe'))
