from dotnetrestore import net_cil_disas, net_exceptions, net_sigs
from dotnetrestore.net_tokens import MetadataToken, TokenTable

"""
Wrappers around dnfile metadata rows.

dnfile parses the rows, these objects give them a stable identity (table + rid) inside a
DotNetPeFile and hang the operations the rest of the package needs off of them.
"""


def heap_str(value):
    if value is None:
        return ''
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return str(value)


def heap_blob(value):
    if value is None:
        return b''
    value = getattr(value, 'value', value)
    return bytes(value)


class RowObject:

    TABLE = None

    def __init__(self, dotnet, rid, row):
        self._dotnet = dotnet
        self.__rid = rid
        self.__row = row

    def get_dotnetpe(self):
        return self._dotnet

    def get_rid(self):
        return self.__rid

    def get_metadata_token(self):
        return MetadataToken(self.TABLE, self.__rid)

    def get_token(self):
        return int(self.get_metadata_token())

    def get_row(self):
        return self.__row

    def __getitem__(self, name):
        return getattr(self.__row, name)

    def get_name(self):
        return heap_str(getattr(self.__row, 'Name', None))

    def get_full_name(self):
        return self.get_name()

    def __eq__(self, other):
        if isinstance(other, RowObject):
            return self.TABLE == other.TABLE and self.__rid == other.__rid and self._dotnet is other._dotnet
        return NotImplemented

    def __hash__(self):
        return hash((self.TABLE, self.__rid))

    def __str__(self):
        return self.get_full_name()

    def __repr__(self):
        return '<{} {} {}>'.format(type(self).__name__, hex(self.get_token()), self.get_full_name())


class TypeDef(RowObject):

    TABLE = TokenTable.TypeDef

    def get_name(self):
        return heap_str(self['TypeName'])

    def get_namespace(self):
        return heap_str(self['TypeNamespace'])

    def get_full_name(self):
        namespace = self.get_namespace()
        if namespace:
            return '{}.{}'.format(namespace, self.get_name())
        return self.get_name()

    def get_method_rids(self):
        method_list = self['MethodList'] or []
        return [index.row_index for index in method_list]

    def get_field_rids(self):
        field_list = self['FieldList'] or []
        return [index.row_index for index in field_list]


class TypeRef(TypeDef):

    TABLE = TokenTable.TypeRef

    def get_method_rids(self):
        return []

    def get_field_rids(self):
        return []


class TypeSpec(RowObject):

    TABLE = TokenTable.TypeSpec

    def get_name(self):
        return 'TypeSpec_{}'.format(self.get_rid())

    def get_signature(self):
        return heap_blob(self['Signature'])


class FieldDef(RowObject):

    TABLE = TokenTable.Field

    def get_parent_type(self):
        return self._dotnet.get_field_parent(self)

    def get_full_name(self):
        parent = self.get_parent_type()
        if parent is None:
            return self.get_name()
        return '{}.{}'.format(parent.get_full_name(), self.get_name())


class MethodDef(RowObject):

    TABLE = TokenTable.MethodDef

    def __init__(self, dotnet, rid, row):
        RowObject.__init__(self, dotnet, rid, row)
        self.__method_body = None
        self.__method_sig = None

    def get_rva(self):
        return self['Rva'] or 0

    def has_body(self):
        return self.get_rva() != 0

    def get_parent_type(self):
        return self._dotnet.get_method_parent(self)

    def get_full_name(self):
        parent = self.get_parent_type()
        if parent is None:
            return self.get_name()
        return '{}.{}'.format(parent.get_full_name(), self.get_name())

    def get_method_signature(self):
        if self.__method_sig is None:
            self.__method_sig = net_sigs.parse_method_signature(heap_blob(self['Signature']))
        return self.__method_sig

    def get_method_body(self):
        """ Obtain the method body, parsing the on-disk header on first use.

        Returns:
            net_cil_disas.MethodBody: The body.  A method without an RVA, or whose stub header is
            not a valid tiny/fat header, gets an empty default body that will be written as a fat method.
        """
        if self.__method_body is None:
            if not self.has_body():
                self.__method_body = net_cil_disas.MethodBody()
            else:
                try:
                    self.__method_body = self._dotnet.read_method_body(self)
                except net_exceptions.InvalidHeaderException as e:
                    print('warning: {} has an unreadable stub header ({}), using a default header'.format(
                        self.get_full_name(), e))
                    self.__method_body = net_cil_disas.MethodBody()
        return self.__method_body

    def is_patched(self):
        return self.__method_body is not None and self.__method_body.is_modified()

    def disassemble_method(self):
        """ Disassemble the current on-disk code of the method. """
        return net_cil_disas.disassemble(self.get_method_body().get_code(), self, self._dotnet)


class MemberRef(RowObject):

    TABLE = TokenTable.MemberRef

    def __init__(self, dotnet, rid, row):
        RowObject.__init__(self, dotnet, rid, row)
        self.__method_sig = None

    def get_parent_type(self):
        return self._dotnet.resolve_coded_index(self['Class'])

    def get_full_name(self):
        parent = self.get_parent_type()
        if parent is None:
            return self.get_name()
        return '{}::{}'.format(parent.get_full_name(), self.get_name())

    def get_signature(self):
        return heap_blob(self['Signature'])

    def get_method_signature(self):
        if self.__method_sig is None:
            self.__method_sig = net_sigs.parse_method_signature(self.get_signature())
        return self.__method_sig


class StandAloneSig(RowObject):

    TABLE = TokenTable.StandAloneSig

    def get_name(self):
        return 'StandAloneSig_{}'.format(self.get_rid())

    def get_method_signature(self):
        """ calli signatures live here, local variable signatures raise InvalidSignatureException. """
        return net_sigs.parse_method_signature(heap_blob(self['Signature']))


class MethodSpec(RowObject):

    TABLE = TokenTable.MethodSpec

    def get_method(self):
        return self._dotnet.resolve_coded_index(self['Method'])

    def get_name(self):
        method = self.get_method()
        if method is None:
            return 'MethodSpec_{}'.format(self.get_rid())
        return method.get_name()

    def get_full_name(self):
        method = self.get_method()
        if method is None:
            return self.get_name()
        return method.get_full_name()

    def get_method_signature(self):
        method = self.get_method()
        if method is None:
            raise net_exceptions.InvalidSignatureException('method')
        return method.get_method_signature()
