import ctypes
from types import SimpleNamespace

import pytest

from conftest import CTOR_BODY
from dotnetrestore import net_exceptions, net_patch
from dotnetrestore.net_cil_disas import MethodBody
from dotnetrestore.net_structs import IMAGE_DOS_HEADER, IMAGE_DOS_SIGNATURE, IMAGE_NT_HEADERS32, \
    IMAGE_NT_SIGNATURE, IMAGE_OPTIONAL_HEADER32, IMAGE_SCN_CNT_CODE, IMAGE_SCN_MEM_READ, IMAGE_SECTION_HEADER

TINY_CTOR = bytes([(len(CTOR_BODY) << 2) | 0x2]) + CTOR_BODY
RVA_CELLS = 0x250


def build_pe(size_of_headers=0x200, virtual_size=0x100, overlay=b''):
    """ A one section PE: .text at RVA 0x1000, file offset 0x200, 0x200 bytes. """
    data = bytearray(0x400)
    dos_header = IMAGE_DOS_HEADER()
    dos_header.e_magic = IMAGE_DOS_SIGNATURE
    dos_header.e_lfanew = 0x40
    data[0:ctypes.sizeof(dos_header)] = bytes(dos_header)

    nt_headers = IMAGE_NT_HEADERS32()
    nt_headers.Signature = IMAGE_NT_SIGNATURE
    nt_headers.FileHeader.NumberOfSections = 1
    nt_headers.FileHeader.SizeOfOptionalHeader = ctypes.sizeof(IMAGE_OPTIONAL_HEADER32)
    nt_headers.OptionalHeader.Magic = 0x10b
    nt_headers.OptionalHeader.SectionAlignment = 0x1000
    nt_headers.OptionalHeader.FileAlignment = 0x200
    nt_headers.OptionalHeader.SizeOfHeaders = size_of_headers
    nt_headers.OptionalHeader.SizeOfImage = 0x2000
    nt_headers.OptionalHeader.SizeOfCode = 0x200
    data[0x40:0x40 + ctypes.sizeof(nt_headers)] = bytes(nt_headers)

    section = IMAGE_SECTION_HEADER()
    section.Name = b'.text'
    section.Misc.VirtualSize = virtual_size
    section.VirtualAddress = 0x1000
    section.SizeOfRawData = 0x200
    section.PointerToRawData = 0x200
    section.Characteristics = IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_READ
    section_offset = 0x40 + ctypes.sizeof(nt_headers)
    data[section_offset:section_offset + ctypes.sizeof(section)] = bytes(section)
    return bytes(data) + overlay


def read_sections(data):
    dos_header, nt_headers = net_patch.read_nt_headers(data)
    return nt_headers, [header for _, header in net_patch.read_section_headers(data, dos_header, nt_headers)]


def fake_method(rid, rva, stub_size):
    body = MethodBody(total_size=stub_size)
    return SimpleNamespace(get_rid=lambda: rid, get_rva=lambda: rva, get_method_body=lambda: body)


def fake_dotnet():
    layout = SimpleNamespace(get_method_rva_offset=lambda position: RVA_CELLS + position * 4)
    return SimpleNamespace(get_layout=lambda: layout)


def test_read_headers():
    nt_headers, sections = read_sections(build_pe())
    assert nt_headers.FileHeader.NumberOfSections == 1
    assert sections[0].Name == b'.text'


def test_not_a_pe():
    with pytest.raises(net_exceptions.NotADotNetFile):
        net_patch.read_nt_headers(b'\x00' * 0x200)


def test_rva_to_offset():
    data = build_pe()
    dos_header, nt_headers = net_patch.read_nt_headers(data)
    sections = net_patch.read_section_headers(data, dos_header, nt_headers)
    assert net_patch.rva_to_offset(sections, 0x1010) == 0x210
    assert net_patch.rva_to_offset(sections, 0x5000) is None


def test_fits_in_place():
    assert net_patch.fits_in_place(MethodBody(total_size=8), 0x1011, TINY_CTOR)
    assert not net_patch.fits_in_place(MethodBody(total_size=4), 0x1010, TINY_CTOR)
    assert not net_patch.fits_in_place(MethodBody(total_size=0), 0x1010, TINY_CTOR)
    fat = b'\x03\x30' + b'\x00' * 10 + b'\x2a'
    assert net_patch.fits_in_place(MethodBody(total_size=16), 0x1010, fat)
    assert not net_patch.fits_in_place(MethodBody(total_size=16), 0x1012, fat)


def test_body_that_fits_is_written_over_its_stub():
    data = build_pe()
    method = fake_method(1, 0x1011, 10)
    new_data = net_patch.patch_method_bodies(fake_dotnet(), data, [(method, TINY_CTOR)])
    assert len(new_data) == len(data)
    assert new_data[0x211:0x219] == TINY_CTOR
    assert new_data[0x219:0x21B] == b'\x00\x00'


def test_bodies_that_do_not_fit_go_to_a_new_section():
    data = build_pe()
    first = fake_method(1, 0x1010, 2)
    second = fake_method(3, 0x1020, 2)
    new_data = net_patch.patch_method_bodies(fake_dotnet(), data, [(first, TINY_CTOR), (second, TINY_CTOR)])
    nt_headers, sections = read_sections(new_data)
    assert nt_headers.FileHeader.NumberOfSections == 2
    new_section = sections[1]
    assert new_section.Name == net_patch.NEW_SECTION_NAME
    assert new_section.VirtualAddress == 0x2000
    assert new_section.PointerToRawData == 0x400
    assert new_section.SizeOfRawData == 0x200
    assert nt_headers.OptionalHeader.SizeOfImage == 0x3000
    assert nt_headers.OptionalHeader.SizeOfCode == 0x400
    assert new_data[0x400:0x408] == TINY_CTOR
    assert new_data[0x408:0x410] == TINY_CTOR
    assert int.from_bytes(new_data[RVA_CELLS:RVA_CELLS + 4], 'little') == 0x2000
    assert int.from_bytes(new_data[RVA_CELLS + 8:RVA_CELLS + 12], 'little') == 0x2008


def test_full_header_grows_the_last_section():
    data = build_pe(size_of_headers=0x160)
    dos_header, nt_headers = net_patch.read_nt_headers(data)
    sections = net_patch.read_section_headers(data, dos_header, nt_headers)
    assert not net_patch.can_add_section(data, dos_header, nt_headers, sections)

    method = fake_method(2, 0x1010, 2)
    new_data = net_patch.patch_method_bodies(fake_dotnet(), data, [(method, TINY_CTOR)])
    nt_headers, sections = read_sections(new_data)
    assert nt_headers.FileHeader.NumberOfSections == 1
    assert sections[0].Misc.VirtualSize == 0x108
    assert sections[0].SizeOfRawData == 0x200
    assert new_data[0x300:0x308] == TINY_CTOR
    assert int.from_bytes(new_data[RVA_CELLS + 4:RVA_CELLS + 8], 'little') == 0x1100


def test_growing_the_last_section_past_its_raw_size():
    data = build_pe(virtual_size=0x1FE)
    dos_header, nt_headers = net_patch.read_nt_headers(data)
    sections = net_patch.read_section_headers(data, dos_header, nt_headers)
    new_data, rva = net_patch.extend_last_section(data, dos_header, nt_headers, sections, TINY_CTOR)
    nt_headers, sections = read_sections(new_data)
    assert rva == 0x1200
    assert sections[0].SizeOfRawData == 0x400
    assert len(new_data) == 0x600
    assert new_data[0x400:0x408] == TINY_CTOR
    assert nt_headers.OptionalHeader.SizeOfCode == 0x400


def test_overlay_prevents_growing_the_last_section():
    data = build_pe(size_of_headers=0x160, overlay=b'signature')
    method = fake_method(1, 0x1010, 2)
    with pytest.raises(net_exceptions.ReconstructionFailedException):
        net_patch.patch_method_bodies(fake_dotnet(), data, [(method, TINY_CTOR)])
