"""Test configuration: makes the package importable and provides in-memory stand-ins for the
module reader and the CLR host, so no runtime or sample binary is needed."""

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dotnetrestore import net_cil_disas, net_exceptions, net_row_objects
from dotnetrestore.dotnetpefile import MethodTableRow
from dotnetrestore.net_host import HostModule
from dotnetrestore.net_tokens import MetadataToken, TokenTable

MODULE_BASE = 0x400000
CACHE_TYPE = 'Demo.BodyCache'
CACHE_FIELD = 'bodies'

#instance method, no parameters, returns void
VOID_INSTANCE_SIG = b'\x20\x00\x01'
#ldarg.0; call System.Object::.ctor; ret
CTOR_BODY = bytes([0x02, 0x28, 0x01, 0x00, 0x00, 0x0A, 0x2A])
#tiny header, 1 byte of code: ret
STUB_BODY = b'\x06\x2a'


def coded_index(table_number, row_index):
    return SimpleNamespace(table=SimpleNamespace(number=table_number), row_index=row_index)


class FakeDotNet:
    """ Just enough of dotnetpefile.DotNetPeFile for decoding, resolving and writing. """

    def __init__(self, method_rvas, user_strings=None):
        self.rows = dict()
        self.stubs = dict()
        self.user_strings = user_strings or {}
        self.method_rvas = list(method_rvas)
        self.written = None
        self.written_path = None
        self.write_error = None
        self.file_path = 'sample.exe'

        self.object_ref = net_row_objects.TypeRef(
            self, 1, SimpleNamespace(TypeName='Object', TypeNamespace='System'))
        self.rows[(TokenTable.TypeRef, 1)] = self.object_ref
        self.program = net_row_objects.TypeDef(
            self, 1, SimpleNamespace(TypeName='Program', TypeNamespace='Demo', MethodList=[], FieldList=[]))
        self.rows[(TokenTable.TypeDef, 1)] = self.program
        self.ctor_ref = net_row_objects.MemberRef(
            self, 1, SimpleNamespace(Name='.ctor', Class=coded_index(TokenTable.TypeRef, 1),
                                     Signature=VOID_INSTANCE_SIG))
        self.rows[(TokenTable.MemberRef, 1)] = self.ctor_ref
        self.methods = list()
        for position, rva in enumerate(self.method_rvas):
            rid = position + 1
            method = net_row_objects.MethodDef(
                self, rid, SimpleNamespace(Name='M{}'.format(position), Rva=rva, Signature=VOID_INSTANCE_SIG))
            self.rows[(TokenTable.MethodDef, rid)] = method
            self.stubs[rid] = STUB_BODY
            self.methods.append(method)

    def get_file_path(self):
        return self.file_path

    def get_method_table_rows(self):
        return [MethodTableRow(rva, position) for position, rva in enumerate(self.method_rvas)]

    def get_token_value(self, token):
        if not isinstance(token, MetadataToken):
            token = MetadataToken.from_value(token)
        return self.rows.get((token.get_table_index(), token.get_row_index()))

    def get_user_string(self, index):
        return self.user_strings.get(index)

    def resolve_coded_index(self, index):
        return self.get_token_value(MetadataToken(index.table.number, index.row_index))

    def get_method_parent(self, method):
        return self.program

    def get_field_parent(self, field):
        return self.program

    def get_method_by_rid(self, rid):
        return self.rows.get((TokenTable.MethodDef, rid))

    def read_method_body(self, method):
        return net_cil_disas.parse_method_body(self.stubs[method.get_rid()], 0, method.get_token())

    def write(self, path):
        if self.write_error is not None:
            raise net_exceptions.DotNetIOException(path, self.write_error)
        self.written = {method.get_rid(): method.get_method_body().compile()
                        for method in self.methods if method.is_patched()}
        self.written_path = path


class FakeHost(HostModule):
    """ A host whose cache values are either bytes (a byte[] value) or a list of (field name, bytes). """

    def __init__(self, entries, module_base=MODULE_BASE, type_name=CACHE_TYPE, field_name=CACHE_FIELD):
        self.entries = list(entries)
        self.module_base = module_base
        self.type_name = type_name
        self.field_name = field_name
        self.is_open = False
        self.open_count = 0

    def open(self):
        self.is_open = True
        self.open_count += 1

    def close(self):
        self.is_open = False

    def get_module_base(self):
        assert self.is_open
        return self.module_base

    def read_cache_map(self, type_name, field_name):
        assert self.is_open
        if type_name != self.type_name:
            raise net_exceptions.CacheTypeNotFoundException(type_name)
        if field_name != self.field_name:
            raise net_exceptions.CacheFieldNotFoundException(type_name, field_name)
        for key, value in self.entries:
            yield key, value

    def get_byte_array_fields(self, value):
        if isinstance(value, bytes):
            return [('', value)]
        return list(value)


def runtime_key(rva, module_base=MODULE_BASE):
    return module_base + rva + 1


@pytest.fixture
def dotnet():
    return FakeDotNet([0x2050, 0x20B3, 0x2100])
