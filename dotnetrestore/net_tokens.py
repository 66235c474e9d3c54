from dotnetrestore import net_exceptions


class TokenTable:
    Module = 0x00
    TypeRef = 0x01
    TypeDef = 0x02
    FieldPtr = 0x03
    Field = 0x04
    MethodPtr = 0x05
    MethodDef = 0x06
    Param = 0x08
    MemberRef = 0x0A
    StandAloneSig = 0x11
    ModuleRef = 0x1A
    TypeSpec = 0x1B
    AssemblyRef = 0x23
    MethodSpec = 0x2B
    UserString = 0x70


TABLE_NAMES = {
    TokenTable.Module: 'Module',
    TokenTable.TypeRef: 'TypeRef',
    TokenTable.TypeDef: 'TypeDef',
    TokenTable.FieldPtr: 'FieldPtr',
    TokenTable.Field: 'Field',
    TokenTable.MethodPtr: 'MethodPtr',
    TokenTable.MethodDef: 'MethodDef',
    TokenTable.Param: 'Param',
    TokenTable.MemberRef: 'MemberRef',
    TokenTable.StandAloneSig: 'StandAloneSig',
    TokenTable.ModuleRef: 'ModuleRef',
    TokenTable.TypeSpec: 'TypeSpec',
    TokenTable.AssemblyRef: 'AssemblyRef',
    TokenTable.MethodSpec: 'MethodSpec',
    TokenTable.UserString: 'UserString',
}


class MetadataToken:
    """ A metadata token, table index in the high byte and a 1 based row index in the low 3 bytes. """

    def __init__(self, table_index, row_index):
        if row_index < 0 or row_index > 0xFFFFFF:
            raise net_exceptions.InvalidTokenException(TABLE_NAMES.get(table_index, hex(table_index)), row_index)
        self.__table_index = table_index
        self.__row_index = row_index

    @classmethod
    def from_value(cls, value):
        return cls((value >> 24) & 0xFF, value & 0xFFFFFF)

    @classmethod
    def from_table_position(cls, table_index, position):
        """ Build a token from a zero based position within a table. """
        return cls(table_index, position + 1)

    def get_table_index(self):
        return self.__table_index

    def get_row_index(self):
        return self.__row_index

    def get_table_name(self):
        return TABLE_NAMES.get(self.__table_index, hex(self.__table_index))

    def get_value(self):
        return (self.__table_index << 24) | self.__row_index

    def __int__(self):
        return self.get_value()

    def __eq__(self, other):
        if isinstance(other, MetadataToken):
            return self.get_value() == other.get_value()
        return NotImplemented

    def __hash__(self):
        return hash(self.get_value())

    def __repr__(self):
        return 'MetadataToken({}, {})'.format(self.get_table_name(), self.__row_index)
