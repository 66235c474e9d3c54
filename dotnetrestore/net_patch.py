import ctypes
from dotnetrestore import net_exceptions
from dotnetrestore.net_structs import IMAGE_DOS_HEADER, IMAGE_DOS_SIGNATURE, IMAGE_FILE_HEADER, IMAGE_NT_HEADERS32, \
    IMAGE_NT_HEADERS64, IMAGE_NT_OPTIONAL_HDR64_MAGIC, IMAGE_NT_SIGNATURE, IMAGE_SCN_CNT_CODE, \
    IMAGE_SCN_CNT_INITIALIZED_DATA, IMAGE_SCN_MEM_EXECUTE, IMAGE_SCN_MEM_READ, IMAGE_SECTION_HEADER, CorILMethod, \
    align_up

NEW_SECTION_NAME = b'.rbody'
NEW_SECTION_CHARACTERISTICS = IMAGE_SCN_CNT_CODE | IMAGE_SCN_MEM_EXECUTE | IMAGE_SCN_MEM_READ


def read_nt_headers(exe_data):
    """
    Read the DOS and NT headers of a PE file.
    :param exe_data: The raw file
    :return: (IMAGE_DOS_HEADER, IMAGE_NT_HEADERS32 or IMAGE_NT_HEADERS64)
    """
    if len(exe_data) < ctypes.sizeof(IMAGE_DOS_HEADER):
        raise net_exceptions.NotADotNetFile()
    dos_header = IMAGE_DOS_HEADER.from_buffer_copy(exe_data, 0)
    if dos_header.e_magic != IMAGE_DOS_SIGNATURE or \
            dos_header.e_lfanew + ctypes.sizeof(IMAGE_NT_HEADERS32) > len(exe_data):
        raise net_exceptions.NotADotNetFile()
    nt_headers = IMAGE_NT_HEADERS32.from_buffer_copy(exe_data, dos_header.e_lfanew)
    if nt_headers.OptionalHeader.Magic == IMAGE_NT_OPTIONAL_HDR64_MAGIC:
        nt_headers = IMAGE_NT_HEADERS64.from_buffer_copy(exe_data, dos_header.e_lfanew)
    if nt_headers.Signature != IMAGE_NT_SIGNATURE:
        raise net_exceptions.NotADotNetFile()
    return dos_header, nt_headers


def write_nt_headers(new_exe_data, dos_header, nt_headers):
    """
    Paste the file header and optional header back into the file.
    The optional header is cut to SizeOfOptionalHeader.
    """
    file_offset = dos_header.e_lfanew + 4
    file_end_offset = file_offset + ctypes.sizeof(IMAGE_FILE_HEADER)
    new_exe_data[file_offset:file_end_offset] = bytes(nt_headers.FileHeader)
    optional_offset = file_end_offset
    optional_size = nt_headers.FileHeader.SizeOfOptionalHeader
    new_exe_data[optional_offset:optional_offset + optional_size] = bytes(nt_headers.OptionalHeader)[:optional_size]


def get_section_table_offset(dos_header, nt_headers):
    return dos_header.e_lfanew + ctypes.sizeof(IMAGE_FILE_HEADER) + 4 + nt_headers.FileHeader.SizeOfOptionalHeader


def read_section_headers(exe_data, dos_header, nt_headers):
    """
    :return: a list of (file offset of the header, IMAGE_SECTION_HEADER)
    """
    section_offset = get_section_table_offset(dos_header, nt_headers)
    sections = list()
    for _ in range(nt_headers.FileHeader.NumberOfSections):
        if section_offset + ctypes.sizeof(IMAGE_SECTION_HEADER) > len(exe_data):
            raise net_exceptions.ReconstructionFailedException('section table out of bounds')
        sections.append((section_offset, IMAGE_SECTION_HEADER.from_buffer_copy(exe_data, section_offset)))
        section_offset += ctypes.sizeof(IMAGE_SECTION_HEADER)
    return sections


def get_virtual_size(section_header):
    if section_header.Misc.VirtualSize == 0:
        return section_header.SizeOfRawData
    return section_header.Misc.VirtualSize


def rva_to_offset(sections, rva):
    for _, section_header in sections:
        if section_header.VirtualAddress <= rva < section_header.VirtualAddress + section_header.SizeOfRawData:
            return rva - section_header.VirtualAddress + section_header.PointerToRawData
    return None


def fits_in_place(stub_body, rva, compiled):
    """
    Whether a compiled body can overwrite the stub it replaces.
    :param stub_body: The net_cil_disas.MethodBody parsed from disk
    :param rva: RVA of the stub
    :param compiled: The new body, header included
    """
    if rva == 0 or stub_body.get_total_size() == 0:
        return False
    if len(compiled) > stub_body.get_total_size():
        return False
    if compiled[0] & CorILMethod.FormatMask == CorILMethod.FatFormat and rva % 4 != 0:
        return False
    return True


def can_add_section(exe_data, dos_header, nt_headers, sections):
    """ Whether the header area has room for one more section header. """
    table_end = get_section_table_offset(dos_header, nt_headers) + \
        (len(sections) + 1) * ctypes.sizeof(IMAGE_SECTION_HEADER)
    limit = nt_headers.OptionalHeader.SizeOfHeaders
    for _, section_header in sections:
        if section_header.SizeOfRawData != 0 and section_header.PointerToRawData != 0:
            limit = min(limit, section_header.PointerToRawData)
    if table_end > limit:
        return False
    #the slot must be unused, some packers keep data right after the section table
    slot_offset = table_end - ctypes.sizeof(IMAGE_SECTION_HEADER)
    return not any(exe_data[slot_offset:table_end])


def append_section(exe_data, dos_header, nt_headers, sections, data):
    """
    Add a new section holding data at the end of the file.
    :return: (new file data, RVA of the new section)
    """
    if len(sections) == 0:
        raise net_exceptions.ReconstructionFailedException('the file has no sections')
    file_alignment = nt_headers.OptionalHeader.FileAlignment
    section_alignment = nt_headers.OptionalHeader.SectionAlignment
    last_offset, last_section = sections[-1]
    new_section = IMAGE_SECTION_HEADER()
    new_section.Name = NEW_SECTION_NAME
    new_section.Misc.VirtualSize = len(data)
    new_section.VirtualAddress = align_up(last_section.VirtualAddress + get_virtual_size(last_section),
                                          section_alignment)
    new_section.SizeOfRawData = align_up(len(data), file_alignment)
    new_section.PointerToRawData = align_up(len(exe_data), file_alignment)
    new_section.Characteristics = NEW_SECTION_CHARACTERISTICS

    new_exe_data = bytearray(exe_data)
    new_exe_data.extend(b'\x00' * (new_section.PointerToRawData - len(exe_data)))
    new_exe_data.extend(data)
    new_exe_data.extend(b'\x00' * (new_section.SizeOfRawData - len(data)))
    section_offset = last_offset + ctypes.sizeof(IMAGE_SECTION_HEADER)
    new_exe_data[section_offset:section_offset + ctypes.sizeof(IMAGE_SECTION_HEADER)] = bytes(new_section)

    nt_headers.FileHeader.NumberOfSections += 1
    nt_headers.OptionalHeader.SizeOfCode += new_section.SizeOfRawData
    nt_headers.OptionalHeader.SizeOfImage = align_up(new_section.VirtualAddress + len(data), section_alignment)
    write_nt_headers(new_exe_data, dos_header, nt_headers)
    return new_exe_data, new_section.VirtualAddress


def extend_last_section(exe_data, dos_header, nt_headers, sections, data):
    """
    Grow the last section so that it ends with data.
    :return: (new file data, RVA where data was placed)
    """
    if len(sections) == 0:
        raise net_exceptions.ReconstructionFailedException('the file has no sections')
    file_alignment = nt_headers.OptionalHeader.FileAlignment
    section_alignment = nt_headers.OptionalHeader.SectionAlignment
    section_offset, section_header = sections[-1]
    raw_end = section_header.PointerToRawData + section_header.SizeOfRawData
    if raw_end < len(exe_data):
        raise net_exceptions.ReconstructionFailedException('data follows the last section, cannot grow it')
    old_rawsize = section_header.SizeOfRawData
    start = align_up(get_virtual_size(section_header), 4)
    new_virtsize = start + len(data)
    new_rawsize = max(align_up(new_virtsize, file_alignment), old_rawsize)

    new_exe_data = bytearray(exe_data)
    write_offset = section_header.PointerToRawData + start
    if len(new_exe_data) < write_offset:
        new_exe_data.extend(b'\x00' * (write_offset - len(new_exe_data)))
    new_exe_data[write_offset:write_offset + len(data)] = data
    new_end = section_header.PointerToRawData + new_rawsize
    if len(new_exe_data) < new_end:
        new_exe_data.extend(b'\x00' * (new_end - len(new_exe_data)))

    section_header.Misc.VirtualSize = new_virtsize
    section_header.SizeOfRawData = new_rawsize
    section_header.Characteristics |= IMAGE_SCN_MEM_READ
    new_exe_data[section_offset:section_offset + ctypes.sizeof(IMAGE_SECTION_HEADER)] = bytes(section_header)

    if section_header.Characteristics & IMAGE_SCN_CNT_CODE:
        nt_headers.OptionalHeader.SizeOfCode += new_rawsize - old_rawsize
    elif section_header.Characteristics & IMAGE_SCN_CNT_INITIALIZED_DATA:
        nt_headers.OptionalHeader.SizeOfInitializedData += new_rawsize - old_rawsize
    nt_headers.OptionalHeader.SizeOfImage = align_up(section_header.VirtualAddress + new_virtsize, section_alignment)
    write_nt_headers(new_exe_data, dos_header, nt_headers)
    return new_exe_data, section_header.VirtualAddress + start


def relocate_method_bodies(layout, exe_data, relocated):
    """
    Place method bodies that do not fit their stub in new space and point their MethodDef rows at them.
    :param layout: net_metadata.MetadataLayout of exe_data
    :param exe_data: The current file data
    :param relocated: list of (net_row_objects.MethodDef, compiled body)
    :return: The new file data
    """
    blob = bytearray()
    placements = list()
    for method, compiled in relocated:
        #fat headers must be 4 byte aligned
        while len(blob) % 4 != 0:
            blob.append(0)
        placements.append((method, len(blob)))
        blob.extend(compiled)

    dos_header, nt_headers = read_nt_headers(exe_data)
    sections = read_section_headers(exe_data, dos_header, nt_headers)
    if can_add_section(exe_data, dos_header, nt_headers, sections):
        new_exe_data, base_rva = append_section(exe_data, dos_header, nt_headers, sections, bytes(blob))
    else:
        print('no room for a new section header, growing the last section instead')
        new_exe_data, base_rva = extend_last_section(exe_data, dos_header, nt_headers, sections, bytes(blob))

    for method, blob_offset in placements:
        cell_offset = layout.get_method_rva_offset(method.get_rid() - 1)
        new_exe_data[cell_offset:cell_offset + 4] = int.to_bytes(base_rva + blob_offset, 4, 'little')
    return new_exe_data


def patch_method_bodies(dotnet, exe_data, bodies):
    """
    Write compiled method bodies into a file.
    Bodies that fit in the stub they replace overwrite it, the rest are relocated.
    :param dotnet: The dotnetpefile.DotNetPeFile matching exe_data
    :param exe_data: The original file data
    :param bodies: list of (net_row_objects.MethodDef, compiled body)
    :return: The new file data
    """
    new_exe_data = bytearray(exe_data)
    dos_header, nt_headers = read_nt_headers(exe_data)
    sections = read_section_headers(exe_data, dos_header, nt_headers)
    relocated = list()
    for method, compiled in bodies:
        stub_body = method.get_method_body()
        rva = method.get_rva()
        if fits_in_place(stub_body, rva, compiled):
            offset = rva_to_offset(sections, rva)
            if offset is not None:
                new_exe_data[offset:offset + len(compiled)] = compiled
                padding = stub_body.get_total_size() - len(compiled)
                new_exe_data[offset + len(compiled):offset + stub_body.get_total_size()] = b'\x00' * padding
                continue
        relocated.append((method, compiled))
    if len(relocated) == 0:
        return bytes(new_exe_data)
    try:
        new_exe_data = relocate_method_bodies(dotnet.get_layout(), new_exe_data, relocated)
    except net_exceptions.InvalidArgumentsException as e:
        raise net_exceptions.ReconstructionFailedException(str(e))
    return bytes(new_exe_data)
