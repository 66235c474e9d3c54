import os
import tempfile
import dnfile
import pefile
from dotnetrestore import net_cil_disas, net_exceptions, net_patch, net_row_objects
from dotnetrestore.net_metadata import MetadataLayout
from dotnetrestore.net_tokens import MetadataToken, TokenTable

#table number -> (dnfile mdtables attribute, row object class)
ROW_OBJECT_TYPES = {
    TokenTable.TypeRef: ('TypeRef', net_row_objects.TypeRef),
    TokenTable.TypeDef: ('TypeDef', net_row_objects.TypeDef),
    TokenTable.Field: ('Field', net_row_objects.FieldDef),
    TokenTable.MethodDef: ('MethodDef', net_row_objects.MethodDef),
    TokenTable.MemberRef: ('MemberRef', net_row_objects.MemberRef),
    TokenTable.StandAloneSig: ('StandAloneSig', net_row_objects.StandAloneSig),
    TokenTable.TypeSpec: ('TypeSpec', net_row_objects.TypeSpec),
    TokenTable.MethodSpec: ('MethodSpec', net_row_objects.MethodSpec),
}

TABLE_NUMBERS = {name: number for number, (name, _) in ROW_OBJECT_TYPES.items()}


class MethodTableRow:
    """ A MethodDef row as stored on disk: its body RVA and its zero based position in the table. """

    def __init__(self, rva, position, table_number=TokenTable.MethodDef):
        self.__rva = rva
        self.__position = position
        self.__table_number = table_number

    def get_rva(self):
        return self.__rva

    def get_position(self):
        return self.__position

    def get_table_number(self):
        return self.__table_number

    def get_metadata_token(self):
        return MetadataToken.from_table_position(self.__table_number, self.__position)

    def __repr__(self):
        return 'MethodTableRow(rva={}, position={})'.format(hex(self.__rva), self.__position)


class DotNetPeFile:
    def __init__(self, file_path=None, pe_data=None):
        """ Parse a .NET PE file.

        Args:
            file_path (str): Path of the file to parse.
            pe_data (bytes): The file contents, used instead of file_path when given.

        Raises:
            net_exceptions.NotADotNetFile: the file has no CLI header.
            net_exceptions.DotNetIOException: the file could not be read.
        """
        if pe_data is None:
            if file_path is None:
                raise net_exceptions.InvalidArgumentsException(expected='file_path or pe_data', actual=None)
            try:
                with open(file_path, 'rb') as infile:
                    pe_data = infile.read()
            except OSError as e:
                raise net_exceptions.DotNetIOException(file_path, e)
        self.__file_path = file_path
        self.__exe_data = bytes(pe_data)
        try:
            self.__dnpe = dnfile.dnPE(data=self.__exe_data)
        except pefile.PEFormatError:
            raise net_exceptions.NotADotNetFile()
        if self.__dnpe.net is None or self.__dnpe.net.mdtables is None:
            raise net_exceptions.NotADotNetFile()
        self.__layout = MetadataLayout(self.__dnpe, self.__exe_data)
        self.__row_cache = dict()
        self.__method_parents = None
        self.__field_parents = None

    def get_pe(self):
        return self.__dnpe

    def get_file_path(self):
        return self.__file_path

    def get_layout(self):
        return self.__layout

    def __get_dnfile_table(self, name):
        return getattr(self.__dnpe.net.mdtables, name, None)

    def __get_row_object(self, table_number, rid):
        key = (table_number, rid)
        if key in self.__row_cache:
            return self.__row_cache[key]
        if table_number not in ROW_OBJECT_TYPES:
            return None
        table_name, row_class = ROW_OBJECT_TYPES[table_number]
        table = self.__get_dnfile_table(table_name)
        if table is None or rid <= 0 or rid > len(table.rows):
            return None
        result = row_class(self, rid, table.rows[rid - 1])
        self.__row_cache[key] = result
        return result

    def get_metadata_table(self, name):
        """ All row objects of a table, in table order. """
        if name not in TABLE_NUMBERS:
            raise net_exceptions.OperationNotSupportedException()
        table = self.__get_dnfile_table(name)
        if table is None:
            return []
        table_number = TABLE_NUMBERS[name]
        return [self.__get_row_object(table_number, rid) for rid in range(1, len(table.rows) + 1)]

    def get_method_by_rid(self, rid):
        return self.__get_row_object(TokenTable.MethodDef, rid)

    def get_token_value(self, token):
        """ Resolve a metadata token to its row object.

        Args:
            token (int or MetadataToken): The token.

        Returns:
            The row object, or None when the table is unknown or the row does not exist.
        """
        if not isinstance(token, MetadataToken):
            token = MetadataToken.from_value(token)
        return self.__get_row_object(token.get_table_index(), token.get_row_index())

    def get_user_string(self, index):
        return self.__layout.read_user_string(index)

    def resolve_coded_index(self, coded_index):
        """ Row object named by a dnfile coded index, None when it names nothing we wrap. """
        if coded_index is None or getattr(coded_index, 'table', None) is None:
            return None
        return self.__get_row_object(coded_index.table.number, coded_index.row_index)

    def get_method_parent(self, method):
        if self.__method_parents is None:
            self.__method_parents = dict()
            for typedef in self.get_metadata_table('TypeDef'):
                for rid in typedef.get_method_rids():
                    self.__method_parents[rid] = typedef
        return self.__method_parents.get(method.get_rid())

    def get_field_parent(self, field):
        if self.__field_parents is None:
            self.__field_parents = dict()
            for typedef in self.get_metadata_table('TypeDef'):
                for rid in typedef.get_field_rids():
                    self.__field_parents[rid] = typedef
        return self.__field_parents.get(field.get_rid())

    def get_method_table_rows(self):
        """ Every MethodDef row as it is stored on disk, in table order. """
        table = self.__get_dnfile_table('MethodDef')
        if table is None:
            return []
        return [MethodTableRow(row.Rva or 0, position) for position, row in enumerate(table.rows)]

    def read_method_body(self, method):
        try:
            offset = self.__dnpe.get_offset_from_rva(method.get_rva())
        except pefile.PEFormatError:
            raise net_exceptions.InvalidHeaderException(method.get_token())
        return net_cil_disas.parse_method_body(self.__exe_data, offset, method.get_token())

    def get_patched_methods(self):
        return [method for method in self.get_metadata_table('MethodDef') if method.is_patched()]

    def get_exe_data(self):
        """ Rebuild the file with every patched method body.

        Returns:
            bytes: The new file contents.
        """
        bodies = list()
        for method in self.get_patched_methods():
            method_body = method.get_method_body()
            bodies.append((method, method_body.compile()))
        if len(bodies) == 0:
            return self.__exe_data
        return net_patch.patch_method_bodies(self, self.__exe_data, bodies)

    def write(self, path):
        """ Write the rebuilt file.  The file is first written beside the target and then
        renamed over it, so a failed write never leaves a partial file behind.
        """
        data = self.get_exe_data()
        directory = os.path.dirname(os.path.abspath(path))
        temp_path = None
        try:
            fd, temp_path = tempfile.mkstemp(prefix='.dotnetrestore-', dir=directory)
            with os.fdopen(fd, 'wb') as outfile:
                outfile.write(data)
            os.replace(temp_path, path)
        except OSError as e:
            if temp_path is not None and os.path.exists(temp_path):
                os.remove(temp_path)
            raise net_exceptions.DotNetIOException(path, e)


def try_get_dotnetpe(file_path=None, pe_data=None):
    try:
        return DotNetPeFile(file_path=file_path, pe_data=pe_data)
    except net_exceptions.NotADotNetFile:
        return None
