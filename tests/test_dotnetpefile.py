import ctypes
import struct

import pytest

from conftest import CACHE_FIELD, CACHE_TYPE, CTOR_BODY, MODULE_BASE, VOID_INSTANCE_SIG, FakeHost, runtime_key
from dotnetrestore import dotnetpefile, net_patch
from dotnetrestore.dotnetpefile import DotNetPeFile
from dotnetrestore.net_restore import BodyRestorer, RestoreStatus
from dotnetrestore.net_structs import IMAGE_COR20_HEADER, IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR, IMAGE_DOS_HEADER, \
    IMAGE_DOS_SIGNATURE, IMAGE_NT_HEADERS32, IMAGE_NT_SIGNATURE, IMAGE_OPTIONAL_HEADER32, IMAGE_SCN_CNT_CODE, \
    IMAGE_SCN_MEM_EXECUTE, IMAGE_SCN_MEM_READ, IMAGE_SECTION_HEADER
from dotnetrestore.net_tokens import TokenTable

#one .text section holding the CLI header, three method stubs and the metadata
TEXT_RVA = 0x2000
TEXT_OFFSET = 0x200
TEXT_SIZE = 0x400
CTOR_RVA = 0x2050
RUN_RVA = 0x2058
IDLE_RVA = 0x205C
METADATA_RVA = 0x2060

#tiny header, 7 bytes of code: six nops and ret
CTOR_STUB = b'\x1e' + b'\x00' * 6 + b'\x2a'
#tiny header, 1 byte of code: ret
RET_STUB = b'\x06\x2a'
#ldarg.0; call System.Object::.ctor; ldstr "hi"; pop; ret
RUN_BODY = bytes([0x02, 0x28, 0x01, 0x00, 0x00, 0x0A, 0x72, 0x01, 0x00, 0x00, 0x70, 0x26, 0x2A])

STRINGS = ['demo.exe', '<Module>', 'Program', 'Demo', 'Object', 'System', '.ctor', 'Run', 'Idle']


def pad4(data):
    return data + b'\x00' * (-len(data) % 4)


def file_offset(rva):
    return rva - TEXT_RVA + TEXT_OFFSET


def build_strings():
    heap = bytearray(b'\x00')
    indexes = dict()
    for name in STRINGS:
        indexes[name] = len(heap)
        heap.extend(name.encode('utf-8') + b'\x00')
    return pad4(bytes(heap)), indexes


def build_tables(strings):
    valid = 0
    for table in (TokenTable.Module, TokenTable.TypeRef, TokenTable.TypeDef, TokenTable.MethodDef,
                  TokenTable.MemberRef):
        valid |= 1 << table
    data = struct.pack('<IBBBBQQ', 0, 2, 0, 0, 1, valid, 0) + struct.pack('<IIIII', 1, 1, 2, 3, 1)
    #Module: Generation, Name, Mvid, EncId, EncBaseId
    data += struct.pack('<HHHHH', 0, strings['demo.exe'], 1, 0, 0)
    #TypeRef: ResolutionScope (Module 1), TypeName, TypeNamespace
    data += struct.pack('<HHH', 1 << 2, strings['Object'], strings['System'])
    #TypeDef: Flags, TypeName, TypeNamespace, Extends, FieldList, MethodList
    data += struct.pack('<IHHHHH', 0, strings['<Module>'], 0, 0, 1, 1)
    data += struct.pack('<IHHHHH', 0x100001, strings['Program'], strings['Demo'], (1 << 2) | 1, 1, 1)
    #MethodDef: Rva, ImplFlags, Flags, Name, Signature, ParamList
    data += struct.pack('<IHHHHH', CTOR_RVA, 0, 0x1886, strings['.ctor'], 1, 1)
    data += struct.pack('<IHHHHH', RUN_RVA, 0, 0x86, strings['Run'], 1, 1)
    data += struct.pack('<IHHHHH', IDLE_RVA, 0, 0x86, strings['Idle'], 1, 1)
    #MemberRef: Class (TypeRef 1), Name, Signature
    data += struct.pack('<HHH', (1 << 3) | 1, strings['.ctor'], 1)
    return pad4(data)


def build_metadata():
    strings, indexes = build_strings()
    streams = [
        ('#~', build_tables(indexes)),
        ('#Strings', strings),
        ('#US', pad4(b'\x00' + bytes([5]) + 'hi'.encode('utf-16le') + b'\x00')),
        ('#GUID', bytes(range(16))),
        ('#Blob', pad4(b'\x00' + bytes([len(VOID_INSTANCE_SIG)]) + VOID_INSTANCE_SIG)),
    ]
    root = b'BSJB' + struct.pack('<HHII', 1, 1, 0, 12) + b'v4.0.30319\x00\x00' + struct.pack('<HH', 0, len(streams))
    stream_offset = len(root) + sum(8 + len(pad4(name.encode('ascii') + b'\x00')) for name, _ in streams)
    headers = b''
    heaps = b''
    for name, data in streams:
        headers += struct.pack('<II', stream_offset + len(heaps), len(data)) + pad4(name.encode('ascii') + b'\x00')
        heaps += data
    return root + headers + heaps


def build_pe(cli_header=True):
    """ A PE32 .NET module: Demo.Program with .ctor, Run and Idle, all of them stubs. """
    metadata = build_metadata()
    data = bytearray(TEXT_OFFSET + TEXT_SIZE)
    dos_header = IMAGE_DOS_HEADER()
    dos_header.e_magic = IMAGE_DOS_SIGNATURE
    dos_header.e_lfanew = 0x80
    data[0:ctypes.sizeof(dos_header)] = bytes(dos_header)

    nt_headers = IMAGE_NT_HEADERS32()
    nt_headers.Signature = IMAGE_NT_SIGNATURE
    nt_headers.FileHeader.Machine = 0x14c
    nt_headers.FileHeader.NumberOfSections = 1
    nt_headers.FileHeader.SizeOfOptionalHeader = ctypes.sizeof(IMAGE_OPTIONAL_HEADER32)
    nt_headers.FileHeader.Characteristics = 0x102
    nt_headers.OptionalHeader.Magic = 0x10b
    nt_headers.OptionalHeader.SizeOfCode = TEXT_SIZE
    nt_headers.OptionalHeader.BaseOfCode = TEXT_RVA
    nt_headers.OptionalHeader.ImageBase = MODULE_BASE
    nt_headers.OptionalHeader.SectionAlignment = 0x1000
    nt_headers.OptionalHeader.FileAlignment = 0x200
    nt_headers.OptionalHeader.MajorSubsystemVersion = 4
    nt_headers.OptionalHeader.SizeOfImage = 0x3000
    nt_headers.OptionalHeader.SizeOfHeaders = TEXT_OFFSET
    nt_headers.OptionalHeader.Subsystem = 3
    nt_headers.OptionalHeader.NumberOfRvaAndSizes = 16
    com_directory = nt_headers.OptionalHeader.DataDirectory[IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR]
    if cli_header:
        com_directory.VirtualAddress = TEXT_RVA
        com_directory.Size = ctypes.sizeof(IMAGE_COR20_HEADER)
    data[0x80:0x80 + ctypes.sizeof(nt_headers)] = bytes(nt_headers)

    section = IMAGE_SECTION_HEADER()
    section.Name = b'.text'
    section.Misc.VirtualSize = TEXT_SIZE
    section.VirtualAddress = TEXT_RVA
    section.SizeOfRawData = TEXT_SIZE
    section.PointerToRawData = TEXT_OFFSET
    section.Characteristics = IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE | IMAGE_SCN_MEM_READ
    section_offset = 0x80 + ctypes.sizeof(nt_headers)
    data[section_offset:section_offset + ctypes.sizeof(section)] = bytes(section)

    cor_header = IMAGE_COR20_HEADER()
    cor_header.cb = ctypes.sizeof(IMAGE_COR20_HEADER)
    cor_header.MajorRuntimeVersion = 2
    cor_header.MinorRuntimeVersion = 5
    cor_header.MetaData.VirtualAddress = METADATA_RVA
    cor_header.MetaData.Size = len(metadata)
    cor_header.Flags = 1
    data[TEXT_OFFSET:TEXT_OFFSET + ctypes.sizeof(cor_header)] = bytes(cor_header)

    for rva, stub in ((CTOR_RVA, CTOR_STUB), (RUN_RVA, RET_STUB), (IDLE_RVA, RET_STUB)):
        data[file_offset(rva):file_offset(rva) + len(stub)] = stub
    data[file_offset(METADATA_RVA):file_offset(METADATA_RVA) + len(metadata)] = metadata
    return bytes(data)


def names(instrs):
    return [instr.get_name() for instr in instrs]


@pytest.fixture
def sample(tmp_path):
    path = tmp_path / 'sample.exe'
    path.write_bytes(build_pe())
    return str(path)


def test_reads_rows_tokens_and_user_strings(sample):
    dotnet = DotNetPeFile(file_path=sample)
    methods = dotnet.get_metadata_table('MethodDef')
    assert [method.get_full_name() for method in methods] == \
        ['Demo.Program..ctor', 'Demo.Program.Run', 'Demo.Program.Idle']
    assert [row.get_rva() for row in dotnet.get_method_table_rows()] == [CTOR_RVA, RUN_RVA, IDLE_RVA]
    assert dotnet.get_token_value(0x0A000001).get_full_name() == 'System.Object::.ctor'
    assert dotnet.get_user_string(1) == 'hi'
    assert dotnet.get_method_by_rid(3).get_method_body().get_code() == b'\x2a'
    assert dotnet.get_patched_methods() == []


def test_rva_cells_match_the_method_rows():
    data = build_pe()
    layout = DotNetPeFile(pe_data=data).get_layout()
    for position, rva in enumerate((CTOR_RVA, RUN_RVA, IDLE_RVA)):
        assert struct.unpack_from('<I', data, layout.get_method_rva_offset(position))[0] == rva


def test_unpatched_module_is_written_unchanged(sample, tmp_path):
    output = tmp_path / 'copy.exe'
    DotNetPeFile(file_path=sample).write(str(output))
    assert output.read_bytes() == build_pe()


def test_restore_writes_one_body_in_place_and_relocates_the_other(sample, tmp_path):
    dotnet = DotNetPeFile(file_path=sample)
    host = FakeHost([(runtime_key(CTOR_RVA), CTOR_BODY), (runtime_key(RUN_RVA), RUN_BODY)])
    output = str(tmp_path / 'restored.exe')
    results = BodyRestorer(dotnet, host, CACHE_TYPE, CACHE_FIELD).run(output)
    assert [result.get_status() for result in results] == [RestoreStatus.Restored, RestoreStatus.Restored]
    assert [result.get_method_name() for result in results] == ['Demo.Program..ctor', 'Demo.Program.Run']

    with open(output, 'rb') as infile:
        data = infile.read()
    #the ctor body has the same footprint as its stub
    assert data[file_offset(CTOR_RVA):file_offset(CTOR_RVA) + len(CTOR_STUB)] == b'\x1e' + CTOR_BODY

    restored = DotNetPeFile(file_path=output)
    ctor = restored.get_method_by_rid(1)
    assert ctor.get_rva() == CTOR_RVA
    assert ctor.get_method_body().get_code() == CTOR_BODY
    assert names(ctor.disassemble_method()) == ['ldarg.0', 'call', 'ret']

    run = restored.get_method_by_rid(2)
    assert run.get_rva() == 0x3000
    section = restored.get_pe().get_section_by_rva(run.get_rva())
    assert section.Name.rstrip(b'\x00') == net_patch.NEW_SECTION_NAME
    assert run.get_method_body().get_code() == RUN_BODY
    instrs = run.disassemble_method()
    assert names(instrs) == ['ldarg.0', 'call', 'ldstr', 'pop', 'ret']
    assert instrs[1].get_argument().get_full_name() == 'System.Object::.ctor'
    assert instrs[2].get_argument().get_value() == 'hi'

    idle = restored.get_method_by_rid(3)
    assert idle.get_rva() == IDLE_RVA
    assert idle.get_method_body().get_code() == b'\x2a'


def test_native_module_is_not_a_dotnet_file():
    assert dotnetpefile.try_get_dotnetpe(pe_data=build_pe(cli_header=False)) is None
