"""
Host side access to a loaded sample.

HostModule is the narrow reflection capability the harvester needs.  ClrHostModule implements it
on top of pythonnet: the sample is loaded into a real CLR so that the protection's own
initialization fills its method body cache, which is then read through reflection.
"""

import os
from dotnetrestore import net_exceptions

BYTE_ARRAY_TYPE_NAME = 'System.Byte[]'


class HostModule:

    def open(self):
        raise net_exceptions.FeatureNotImplementedException()

    def close(self):
        pass

    def get_module_base(self):
        raise net_exceptions.FeatureNotImplementedException()

    def read_cache_map(self, type_name, field_name):
        """ Yield (key, value) for every entry of a static dictionary field. """
        raise net_exceptions.FeatureNotImplementedException()

    def get_byte_array_fields(self, value):
        """ Return [(field name, bytes)] for every byte[] field of value, in declaration order. """
        raise net_exceptions.FeatureNotImplementedException()

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False


def _to_int(value):
    #IntPtr / UIntPtr keys
    if hasattr(value, 'ToInt64'):
        return int(value.ToInt64())
    return int(value)


class ClrHostModule(HostModule):
    def __init__(self, file_path, runtime=None, run_module_initializer=True):
        """ Load a sample into the CLR hosted by pythonnet.

        Args:
            file_path (str): The protected assembly.
            runtime (str): pythonnet runtime name (netfx, coreclr, mono), None for pythonnet's default.
            run_module_initializer (bool): Run the module constructor after loading, which is where
                the protection installs its hook and fills the cache.
        """
        self.__file_path = os.path.abspath(file_path)
        self.__runtime = runtime
        self.__run_module_initializer = run_module_initializer
        self.__assembly = None
        self.__binding_flags = None
        self.__runtime_helpers = None
        self.__marshal = None

    def open(self):
        if self.__assembly is not None:
            return
        import pythonnet
        if self.__runtime is not None:
            pythonnet.load(self.__runtime)
        #importing clr starts the runtime and enables the System imports below
        import clr
        from System.Reflection import Assembly, BindingFlags
        from System.Runtime.CompilerServices import RuntimeHelpers
        from System.Runtime.InteropServices import Marshal
        self.__binding_flags = BindingFlags
        self.__runtime_helpers = RuntimeHelpers
        self.__marshal = Marshal
        try:
            assembly = Assembly.LoadFile(self.__file_path)
            if self.__run_module_initializer:
                RuntimeHelpers.RunModuleConstructor(assembly.ManifestModule.ModuleHandle)
        except Exception as e:
            raise net_exceptions.HostLoadException(self.__file_path, e)
        self.__assembly = assembly
        print('loaded {} into the host runtime'.format(self.__file_path))

    def close(self):
        #an assembly cannot be unloaded from the default context, drop our references
        self.__assembly = None

    def __get_assembly(self):
        if self.__assembly is None:
            raise net_exceptions.OperationNotSupportedException()
        return self.__assembly

    def get_module_base(self):
        module = self.__get_assembly().ManifestModule
        return _to_int(self.__marshal.GetHINSTANCE(module))

    def read_cache_map(self, type_name, field_name):
        assembly = self.__get_assembly()
        cache_type = assembly.GetType(type_name, False)
        if cache_type is None:
            raise net_exceptions.CacheTypeNotFoundException(type_name)
        flags = self.__binding_flags.Static | self.__binding_flags.Public | self.__binding_flags.NonPublic
        cache_field = cache_type.GetField(field_name, flags)
        if cache_field is None:
            raise net_exceptions.CacheFieldNotFoundException(type_name, field_name)
        try:
            self.__runtime_helpers.RunClassConstructor(cache_type.TypeHandle)
        except Exception as e:
            raise net_exceptions.HostLoadException(self.__file_path, e)
        cache = cache_field.GetValue(None)
        if cache is None:
            print('warning: {}.{} is null, the cache was not populated'.format(type_name, field_name))
            return
        for entry in cache:
            yield _to_int(entry.Key), entry.Value

    def get_byte_array_fields(self, value):
        if value is None:
            return []
        value_type = value.GetType()
        if value_type.FullName == BYTE_ARRAY_TYPE_NAME:
            return [('', bytes(value))]
        flags = self.__binding_flags.Instance | self.__binding_flags.Public | self.__binding_flags.NonPublic
        result = list()
        for field in value_type.GetFields(flags):
            if field.FieldType.FullName != BYTE_ARRAY_TYPE_NAME:
                continue
            field_value = field.GetValue(value)
            result.append((field.Name, bytes(field_value) if field_value is not None else b''))
        return result
