import sys

import pytest

from conftest import CACHE_FIELD, CACHE_TYPE, CTOR_BODY, FakeDotNet, FakeHost, runtime_key
from dotnetrestore import net_deobfuscate, net_exceptions, net_host


@pytest.fixture
def sample(monkeypatch):
    dotnet = FakeDotNet([0x2050])
    monkeypatch.setattr(net_deobfuscate.dotnetpefile, 'try_get_dotnetpe',
                        lambda file_path=None, pe_data=None: dotnet)
    return dotnet


def use_host(monkeypatch, entries, type_name=CACHE_TYPE):
    monkeypatch.setattr(net_host, 'ClrHostModule',
                        lambda file_path, runtime=None: FakeHost(entries, type_name=type_name))


def run_main(monkeypatch, *args):
    monkeypatch.setattr(sys, 'argv', ['net_deobfuscate.py'] + list(args))
    net_deobfuscate.main()


def test_restore_mode_writes_the_output(monkeypatch, capsys, sample):
    use_host(monkeypatch, [(runtime_key(0x2050), CTOR_BODY)])
    run_main(monkeypatch, 'restore', 'in.exe', 'out.exe', CACHE_TYPE, CACHE_FIELD)
    assert sample.written_path == 'out.exe'
    assert list(sample.written) == [1]
    assert capsys.readouterr().out.splitlines()[-1] == 'Done'


def test_missing_cache_type_exits_with_an_error(monkeypatch, capsys, sample):
    use_host(monkeypatch, [], type_name='Other.Cache')
    with pytest.raises(SystemExit) as exc_info:
        run_main(monkeypatch, 'restore', 'in.exe', 'out.exe', CACHE_TYPE, CACHE_FIELD)
    assert exc_info.value.code == 1
    assert 'error: ' in capsys.readouterr().out
    assert sample.written is None


def test_reconstruction_failure_exits_with_an_error(monkeypatch, capsys, sample):
    use_host(monkeypatch, [(runtime_key(0x2050), CTOR_BODY)])

    def failing_write(path):
        raise net_exceptions.ReconstructionFailedException('no room for the bodies')

    sample.write = failing_write
    with pytest.raises(SystemExit) as exc_info:
        run_main(monkeypatch, 'deob', 'in.exe', 'out.exe', CACHE_TYPE, CACHE_FIELD)
    assert exc_info.value.code == 1
    assert 'no room for the bodies' in capsys.readouterr().out


def test_context_from_extra_arguments():
    ctx = net_deobfuscate.build_context([CACHE_TYPE, CACHE_FIELD, 'coreclr', '0x0'])
    assert ctx.get_item('CacheTypeName') == CACHE_TYPE
    assert ctx.get_item('CacheFieldName') == CACHE_FIELD
    assert ctx.get_item('ClrRuntime') == 'coreclr'
    assert ctx.get_item('RuntimeKeyBias') == 0
