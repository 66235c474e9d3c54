import ctypes

"""
Raw PE / CLI structures used when the rebuilt image is patched byte for byte.
pefile is used to read an image, these are used to write one.
"""

IMAGE_DOS_SIGNATURE = 0x5A4D
IMAGE_NT_SIGNATURE = 0x00004550
IMAGE_NT_OPTIONAL_HDR32_MAGIC = 0x10b
IMAGE_NT_OPTIONAL_HDR64_MAGIC = 0x20b
IMAGE_NUMBEROF_DIRECTORY_ENTRIES = 16
IMAGE_SIZEOF_SHORT_NAME = 8

IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR = 14

IMAGE_SCN_CNT_CODE = 0x00000020
IMAGE_SCN_CNT_INITIALIZED_DATA = 0x00000040
IMAGE_SCN_CNT_UNINITIALIZED_DATA = 0x00000080
IMAGE_SCN_MEM_EXECUTE = 0x20000000
IMAGE_SCN_MEM_READ = 0x40000000

METADATA_SIGNATURE = 0x424A5342


class IMAGE_DOS_HEADER(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ('e_magic', ctypes.c_uint16),
        ('e_cblp', ctypes.c_uint16),
        ('e_cp', ctypes.c_uint16),
        ('e_crlc', ctypes.c_uint16),
        ('e_cparhdr', ctypes.c_uint16),
        ('e_minalloc', ctypes.c_uint16),
        ('e_maxalloc', ctypes.c_uint16),
        ('e_ss', ctypes.c_uint16),
        ('e_sp', ctypes.c_uint16),
        ('e_csum', ctypes.c_uint16),
        ('e_ip', ctypes.c_uint16),
        ('e_cs', ctypes.c_uint16),
        ('e_lfarlc', ctypes.c_uint16),
        ('e_ovno', ctypes.c_uint16),
        ('e_res', ctypes.c_uint16 * 4),
        ('e_oemid', ctypes.c_uint16),
        ('e_oeminfo', ctypes.c_uint16),
        ('e_res2', ctypes.c_uint16 * 10),
        ('e_lfanew', ctypes.c_uint32),
    ]


class IMAGE_FILE_HEADER(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ('Machine', ctypes.c_uint16),
        ('NumberOfSections', ctypes.c_uint16),
        ('TimeDateStamp', ctypes.c_uint32),
        ('PointerToSymbolTable', ctypes.c_uint32),
        ('NumberOfSymbols', ctypes.c_uint32),
        ('SizeOfOptionalHeader', ctypes.c_uint16),
        ('Characteristics', ctypes.c_uint16),
    ]


class IMAGE_DATA_DIRECTORY(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ('VirtualAddress', ctypes.c_uint32),
        ('Size', ctypes.c_uint32),
    ]


class IMAGE_OPTIONAL_HEADER32(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ('Magic', ctypes.c_uint16),
        ('MajorLinkerVersion', ctypes.c_uint8),
        ('MinorLinkerVersion', ctypes.c_uint8),
        ('SizeOfCode', ctypes.c_uint32),
        ('SizeOfInitializedData', ctypes.c_uint32),
        ('SizeOfUninitializedData', ctypes.c_uint32),
        ('AddressOfEntryPoint', ctypes.c_uint32),
        ('BaseOfCode', ctypes.c_uint32),
        ('BaseOfData', ctypes.c_uint32),
        ('ImageBase', ctypes.c_uint32),
        ('SectionAlignment', ctypes.c_uint32),
        ('FileAlignment', ctypes.c_uint32),
        ('MajorOperatingSystemVersion', ctypes.c_uint16),
        ('MinorOperatingSystemVersion', ctypes.c_uint16),
        ('MajorImageVersion', ctypes.c_uint16),
        ('MinorImageVersion', ctypes.c_uint16),
        ('MajorSubsystemVersion', ctypes.c_uint16),
        ('MinorSubsystemVersion', ctypes.c_uint16),
        ('Win32VersionValue', ctypes.c_uint32),
        ('SizeOfImage', ctypes.c_uint32),
        ('SizeOfHeaders', ctypes.c_uint32),
        ('CheckSum', ctypes.c_uint32),
        ('Subsystem', ctypes.c_uint16),
        ('DllCharacteristics', ctypes.c_uint16),
        ('SizeOfStackReserve', ctypes.c_uint32),
        ('SizeOfStackCommit', ctypes.c_uint32),
        ('SizeOfHeapReserve', ctypes.c_uint32),
        ('SizeOfHeapCommit', ctypes.c_uint32),
        ('LoaderFlags', ctypes.c_uint32),
        ('NumberOfRvaAndSizes', ctypes.c_uint32),
        ('DataDirectory', IMAGE_DATA_DIRECTORY * IMAGE_NUMBEROF_DIRECTORY_ENTRIES),
    ]


class IMAGE_OPTIONAL_HEADER64(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ('Magic', ctypes.c_uint16),
        ('MajorLinkerVersion', ctypes.c_uint8),
        ('MinorLinkerVersion', ctypes.c_uint8),
        ('SizeOfCode', ctypes.c_uint32),
        ('SizeOfInitializedData', ctypes.c_uint32),
        ('SizeOfUninitializedData', ctypes.c_uint32),
        ('AddressOfEntryPoint', ctypes.c_uint32),
        ('BaseOfCode', ctypes.c_uint32),
        ('ImageBase', ctypes.c_uint64),
        ('SectionAlignment', ctypes.c_uint32),
        ('FileAlignment', ctypes.c_uint32),
        ('MajorOperatingSystemVersion', ctypes.c_uint16),
        ('MinorOperatingSystemVersion', ctypes.c_uint16),
        ('MajorImageVersion', ctypes.c_uint16),
        ('MinorImageVersion', ctypes.c_uint16),
        ('MajorSubsystemVersion', ctypes.c_uint16),
        ('MinorSubsystemVersion', ctypes.c_uint16),
        ('Win32VersionValue', ctypes.c_uint32),
        ('SizeOfImage', ctypes.c_uint32),
        ('SizeOfHeaders', ctypes.c_uint32),
        ('CheckSum', ctypes.c_uint32),
        ('Subsystem', ctypes.c_uint16),
        ('DllCharacteristics', ctypes.c_uint16),
        ('SizeOfStackReserve', ctypes.c_uint64),
        ('SizeOfStackCommit', ctypes.c_uint64),
        ('SizeOfHeapReserve', ctypes.c_uint64),
        ('SizeOfHeapCommit', ctypes.c_uint64),
        ('LoaderFlags', ctypes.c_uint32),
        ('NumberOfRvaAndSizes', ctypes.c_uint32),
        ('DataDirectory', IMAGE_DATA_DIRECTORY * IMAGE_NUMBEROF_DIRECTORY_ENTRIES),
    ]


class IMAGE_NT_HEADERS32(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ('Signature', ctypes.c_uint32),
        ('FileHeader', IMAGE_FILE_HEADER),
        ('OptionalHeader', IMAGE_OPTIONAL_HEADER32),
    ]


class IMAGE_NT_HEADERS64(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ('Signature', ctypes.c_uint32),
        ('FileHeader', IMAGE_FILE_HEADER),
        ('OptionalHeader', IMAGE_OPTIONAL_HEADER64),
    ]


class _SECTION_MISC(ctypes.Union):
    _pack_ = 1
    _fields_ = [
        ('PhysicalAddress', ctypes.c_uint32),
        ('VirtualSize', ctypes.c_uint32),
    ]


class IMAGE_SECTION_HEADER(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ('Name', ctypes.c_char * IMAGE_SIZEOF_SHORT_NAME),
        ('Misc', _SECTION_MISC),
        ('VirtualAddress', ctypes.c_uint32),
        ('SizeOfRawData', ctypes.c_uint32),
        ('PointerToRawData', ctypes.c_uint32),
        ('PointerToRelocations', ctypes.c_uint32),
        ('PointerToLinenumbers', ctypes.c_uint32),
        ('NumberOfRelocations', ctypes.c_uint16),
        ('NumberOfLinenumbers', ctypes.c_uint16),
        ('Characteristics', ctypes.c_uint32),
    ]


class _COR20_ENTRYPOINT(ctypes.Union):
    _pack_ = 1
    _fields_ = [
        ('EntryPointToken', ctypes.c_uint32),
        ('EntryPointRVA', ctypes.c_uint32),
    ]


class IMAGE_COR20_HEADER(ctypes.LittleEndianStructure):
    _pack_ = 1
    _fields_ = [
        ('cb', ctypes.c_uint32),
        ('MajorRuntimeVersion', ctypes.c_uint16),
        ('MinorRuntimeVersion', ctypes.c_uint16),
        ('MetaData', IMAGE_DATA_DIRECTORY),
        ('Flags', ctypes.c_uint32),
        ('EntryPoint', _COR20_ENTRYPOINT),
        ('Resources', IMAGE_DATA_DIRECTORY),
        ('StrongNameSignature', IMAGE_DATA_DIRECTORY),
        ('CodeManagerTable', IMAGE_DATA_DIRECTORY),
        ('VTableFixups', IMAGE_DATA_DIRECTORY),
        ('ExportAddressTableJumps', IMAGE_DATA_DIRECTORY),
        ('ManagedNativeHeader', IMAGE_DATA_DIRECTORY),
    ]


class CorILMethod:
    TinyFormat = 0x2
    FatFormat = 0x3
    FormatMask = 0x3
    MoreSects = 0x8
    InitLocals = 0x10
    Sect_EHTable = 0x1
    Sect_OptILTable = 0x2
    Sect_FatFormat = 0x40
    Sect_MoreSects = 0x80


class CorILExceptionClause:
    Exception = 0x0
    Filter = 0x1
    Finally = 0x2
    Fault = 0x4


def align_up(value, alignment):
    if alignment == 0:
        return value
    remainder = value % alignment
    if remainder == 0:
        return value
    return value + (alignment - remainder)
