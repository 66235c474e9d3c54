from dotnetrestore import net_exceptions, net_row_objects
from dotnetrestore.net_tokens import MetadataToken


class MetadataResolver:
    def __init__(self, dotnet):
        """ Index the MethodDef rows of a module by the RVA of their body.

        Args:
            dotnet (dotnetpefile.DotNetPeFile): The module.  Only get_method_table_rows()
                and get_token_value() are used.
        """
        self.__dotnet = dotnet
        self.__rows_by_rva = dict()
        for row in dotnet.get_method_table_rows():
            #abstract / extern / runtime methods share RVA 0
            if row.get_rva() == 0:
                continue
            self.__rows_by_rva.setdefault(row.get_rva(), list()).append(row)

    def find_rows(self, rva):
        return list(self.__rows_by_rva.get(rva, []))

    def resolve(self, rva):
        """ Find the method whose body lives at an RVA.

        Returns:
            net_row_objects.MethodDef: The method, None when no row has this RVA.

        Raises:
            net_exceptions.AmbiguousMethodException: more than one row has this RVA.
        """
        if rva < 0:
            return None
        rows = self.__rows_by_rva.get(rva)
        if not rows:
            return None
        if len(rows) > 1:
            raise net_exceptions.AmbiguousMethodException(rva, len(rows))
        row = rows[0]
        token = MetadataToken.from_table_position(row.get_table_number(), row.get_position())
        method = self.__dotnet.get_token_value(token)
        if not isinstance(method, net_row_objects.MethodDef):
            return None
        return method
