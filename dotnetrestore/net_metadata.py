import ctypes
from dotnetrestore import net_exceptions, net_sigs
from dotnetrestore.net_structs import IMAGE_COR20_HEADER, IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR, METADATA_SIGNATURE
from dotnetrestore.net_tokens import TokenTable

"""
Raw layout of the CLI metadata inside a PE file.
dnfile gives us the row contents, this gives us where the rows live on disk so that
MethodDef RVA cells can be rewritten, and reads the #US heap directly.
"""

HEAP_LARGE_STRINGS = 0x01
HEAP_LARGE_GUID = 0x02
HEAP_LARGE_BLOB = 0x04
HEAP_EXTRA_DATA = 0x40


def _index_size(row_count):
    if row_count < 0x10000:
        return 2
    return 4


class MetadataLayout:
    def __init__(self, pe, exe_data):
        """ Locate the metadata root, stream headers and the tables stream.

        Args:
            pe (pefile.PE): A parsed PE matching exe_data.
            exe_data (bytes): The raw file.
        """
        self.__exe_data = exe_data
        self.__streams = dict()
        self.__row_counts = dict()
        self.__heap_sizes = 0
        self.__tables_offset = -1
        self.__cor20_offset = -1
        self.__metadata_offset = -1
        self.__parse_cor20(pe)
        self.__parse_streams()
        self.__parse_tables_header()

    def __parse_cor20(self, pe):
        dirs = pe.OPTIONAL_HEADER.DATA_DIRECTORY
        if len(dirs) <= IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR:
            raise net_exceptions.NotADotNetFile()
        com_dir = dirs[IMAGE_DIRECTORY_ENTRY_COM_DESCRIPTOR]
        if com_dir.VirtualAddress == 0:
            raise net_exceptions.NotADotNetFile()
        self.__cor20_offset = pe.get_offset_from_rva(com_dir.VirtualAddress)
        if self.__cor20_offset is None or self.__cor20_offset + ctypes.sizeof(IMAGE_COR20_HEADER) > len(self.__exe_data):
            raise net_exceptions.InvalidMetadataException('COR20 header out of bounds')
        cor_header = IMAGE_COR20_HEADER.from_buffer_copy(self.__exe_data, self.__cor20_offset)
        self.__metadata_offset = pe.get_offset_from_rva(cor_header.MetaData.VirtualAddress)
        if self.__metadata_offset is None:
            raise net_exceptions.InvalidMetadataException('metadata RVA is not mapped')

    def __read_int(self, offset, size):
        if offset + size > len(self.__exe_data):
            raise net_exceptions.InvalidMetadataException('read past end of file at {}'.format(hex(offset)))
        return int.from_bytes(self.__exe_data[offset:offset + size], 'little')

    def __parse_streams(self):
        offset = self.__metadata_offset
        if self.__read_int(offset, 4) != METADATA_SIGNATURE:
            raise net_exceptions.InvalidMetadataException('bad metadata signature')
        version_length = self.__read_int(offset + 12, 4)
        current_offset = offset + 16 + version_length
        #flags u16 then number of streams u16
        number_of_streams = self.__read_int(current_offset + 2, 2)
        current_offset += 4
        for _ in range(number_of_streams):
            stream_offset = self.__read_int(current_offset, 4)
            stream_size = self.__read_int(current_offset + 4, 4)
            current_offset += 8
            name_end = self.__exe_data.find(b'\x00', current_offset)
            if name_end == -1:
                raise net_exceptions.InvalidMetadataException('unterminated stream name')
            name = bytes(self.__exe_data[current_offset:name_end]).decode('ascii', errors='replace')
            current_offset = name_end + 1
            if current_offset % 4 != 0:
                current_offset += 4 - (current_offset % 4)
            #first stream wins, same as the runtime
            if name not in self.__streams:
                self.__streams[name] = (offset + stream_offset, stream_size)

    def __parse_tables_header(self):
        if '#~' in self.__streams:
            tables_stream = self.__streams['#~']
        elif '#-' in self.__streams:
            tables_stream = self.__streams['#-']
        else:
            raise net_exceptions.InvalidMetadataException('no tables stream')
        offset = tables_stream[0]
        self.__heap_sizes = self.__read_int(offset + 6, 1)
        valid = self.__read_int(offset + 8, 8)
        current_offset = offset + 24
        for table_index in range(64):
            if valid & (1 << table_index):
                self.__row_counts[table_index] = self.__read_int(current_offset, 4)
                current_offset += 4
        if self.__heap_sizes & HEAP_EXTRA_DATA:
            current_offset += 4
        self.__tables_offset = current_offset

    def get_streams(self):
        return dict(self.__streams)

    def get_cor20_offset(self):
        return self.__cor20_offset

    def get_metadata_offset(self):
        return self.__metadata_offset

    def get_row_count(self, table_index):
        return self.__row_counts.get(table_index, 0)

    def __string_size(self):
        return 4 if self.__heap_sizes & HEAP_LARGE_STRINGS else 2

    def __guid_size(self):
        return 4 if self.__heap_sizes & HEAP_LARGE_GUID else 2

    def __blob_size(self):
        return 4 if self.__heap_sizes & HEAP_LARGE_BLOB else 2

    def __simple_index_size(self, table_index):
        return _index_size(self.get_row_count(table_index))

    def __coded_index_size(self, table_indexes, tag_bits):
        max_rows = max(self.get_row_count(t) for t in table_indexes)
        if max_rows < (1 << (16 - tag_bits)):
            return 2
        return 4

    def get_row_size(self, table_index):
        """ Row size of the tables that precede and include MethodDef. """
        if table_index == TokenTable.Module:
            return 2 + self.__string_size() + 3 * self.__guid_size()
        if table_index == TokenTable.TypeRef:
            resolution_scope = self.__coded_index_size([TokenTable.Module, TokenTable.ModuleRef,
                                                        TokenTable.AssemblyRef, TokenTable.TypeRef], 2)
            return resolution_scope + 2 * self.__string_size()
        if table_index == TokenTable.TypeDef:
            extends = self.__coded_index_size([TokenTable.TypeDef, TokenTable.TypeRef, TokenTable.TypeSpec], 2)
            return 4 + 2 * self.__string_size() + extends + self.__simple_index_size(TokenTable.Field) + \
                self.__simple_index_size(TokenTable.MethodDef)
        if table_index == TokenTable.FieldPtr:
            return self.__simple_index_size(TokenTable.Field)
        if table_index == TokenTable.Field:
            return 2 + self.__string_size() + self.__blob_size()
        if table_index == TokenTable.MethodPtr:
            return self.__simple_index_size(TokenTable.MethodDef)
        if table_index == TokenTable.MethodDef:
            return 4 + 2 + 2 + self.__string_size() + self.__blob_size() + self.__simple_index_size(TokenTable.Param)
        raise net_exceptions.OperationNotSupportedException()

    def get_table_offset(self, table_index):
        if table_index > TokenTable.MethodDef:
            raise net_exceptions.OperationNotSupportedException()
        offset = self.__tables_offset
        for previous in range(table_index):
            offset += self.get_row_count(previous) * self.get_row_size(previous)
        return offset

    def get_method_rva_offset(self, position):
        """ File offset of the RVA column of the MethodDef row at a zero based position. """
        if position < 0 or position >= self.get_row_count(TokenTable.MethodDef):
            raise net_exceptions.InvalidArgumentsException(expected='MethodDef position', actual=position)
        return self.get_table_offset(TokenTable.MethodDef) + position * self.get_row_size(TokenTable.MethodDef)

    def read_user_string(self, index):
        """ Read an entry of the #US heap.

        Returns:
            str: The string, or None when the index is outside the heap or the entry is malformed.
        """
        if '#US' not in self.__streams:
            return None
        heap_offset, heap_size = self.__streams['#US']
        if index <= 0 or index >= heap_size:
            return None
        try:
            length, data_offset = net_sigs.read_compressed_uint(self.__exe_data, heap_offset + index)
        except net_exceptions.InvalidSignatureException:
            return None
        if data_offset + length > heap_offset + heap_size:
            return None
        #the last byte is a flag byte, not part of the string
        raw = bytes(self.__exe_data[data_offset:data_offset + (length & ~1)])
        try:
            return raw.decode('utf-16le')
        except UnicodeDecodeError:
            return None
