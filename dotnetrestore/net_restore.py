import sys
from dotnetrestore import dotnetpefile, net_address, net_cil_disas, net_exceptions, net_harvest, net_host, \
    net_recompiler
from dotnetrestore.net_resolver import MetadataResolver


class RestoreStatus:
    Restored = 'restored'
    NotFound = 'not_found'
    Ambiguous = 'ambiguous'
    DecodeError = 'decode_error'


class RestoreResult:
    def __init__(self, key, rva, status, method_name=None, message=''):
        self.__key = key
        self.__rva = rva
        self.__status = status
        self.__method_name = method_name
        self.__message = message

    def get_key(self):
        return self.__key

    def get_rva(self):
        return self.__rva

    def get_status(self):
        return self.__status

    def get_method_name(self):
        return self.__method_name

    def get_message(self):
        return self.__message

    def is_restored(self):
        return self.__status == RestoreStatus.Restored

    def __str__(self):
        name = self.__method_name if self.__method_name is not None else 'not found'
        if self.is_restored():
            return '[+] {} (rva {}): restored'.format(name, hex(self.__rva))
        return '[-] {} (key {}, rva {}): {} {}'.format(name, hex(self.__key), hex(self.__rva), self.__status,
                                                       self.__message).rstrip()

    def __repr__(self):
        return '<RestoreResult {}>'.format(str(self))


class RestorerState:
    Loaded = 'loaded'
    Harvested = 'harvested'
    Restored = 'restored'
    Written = 'written'


class BodyRestorer:
    def __init__(self, dotnet, host, type_name, field_name, key_bias=net_address.RUNTIME_KEY_BIAS):
        """ Puts the bodies held in a protection's runtime cache back into the module.

        Args:
            dotnet (dotnetpefile.DotNetPeFile): The protected module, read from disk.
            host (net_host.HostModule): The same file, loadable into a runtime.
            type_name (str): Full name of the type holding the cache.
            field_name (str): Name of the cache field.
            key_bias (int): Difference between a cache key and module base + RVA.
        """
        self.__dotnet = dotnet
        self.__host = host
        self.__type_name = type_name
        self.__field_name = field_name
        self.__key_bias = key_bias
        self.__state = RestorerState.Loaded
        self.__entries = list()
        self.__module_base = 0
        self.__results = list()

    def get_state(self):
        return self.__state

    def get_entries(self):
        return list(self.__entries)

    def get_module_base(self):
        return self.__module_base

    def get_results(self):
        return list(self.__results)

    def harvest(self):
        """ Load the sample in the host and read the whole cache before anything is resolved. """
        if self.__state != RestorerState.Loaded:
            raise net_exceptions.OperationNotSupportedException()
        with self.__host:
            harvester = net_harvest.CacheHarvester(self.__host, self.__type_name, self.__field_name)
            self.__entries = harvester.harvest()
            self.__module_base = self.__host.get_module_base()
        print('module base {}'.format(hex(self.__module_base)))
        self.__state = RestorerState.Harvested
        return self.__entries

    def restore_entry(self, resolver, entry):
        address = net_address.RuntimeAddress(entry.get_key(), self.__module_base, self.__key_bias)
        rva = address.get_rva()
        if entry.is_sentinel():
            return RestoreResult(entry.get_key(), rva, RestoreStatus.NotFound)
        if not address.is_valid():
            return RestoreResult(entry.get_key(), rva, RestoreStatus.NotFound, message='negative rva')
        try:
            method = resolver.resolve(rva)
        except net_exceptions.AmbiguousMethodException as e:
            return RestoreResult(entry.get_key(), rva, RestoreStatus.Ambiguous, message=str(e))
        if method is None:
            return RestoreResult(entry.get_key(), rva, RestoreStatus.NotFound)
        method_name = method.get_full_name()
        if len(entry.get_blob()) == 0:
            return RestoreResult(entry.get_key(), rva, RestoreStatus.DecodeError, method_name, 'empty body')
        try:
            instrs = net_cil_disas.disassemble(entry.get_blob(), method, self.__dotnet)
        except net_exceptions.InstructionDecodeException as e:
            return RestoreResult(entry.get_key(), rva, RestoreStatus.DecodeError, method_name, str(e))
        #a body that cannot be compiled leaves the stub untouched
        method_body = method.get_method_body()
        try:
            compiled = net_recompiler.MethodRecompiler(instrs, method_body.get_exception_blocks(),
                                                       method_body.get_local_var_sig_token(),
                                                       method_body.get_init_locals()).compile_method()
        except net_exceptions.DotNetRestoreException as e:
            return RestoreResult(entry.get_key(), rva, RestoreStatus.DecodeError, method_name, str(e))
        net_cil_disas.install_instructions(instrs, method_body, compiled)
        return RestoreResult(entry.get_key(), rva, RestoreStatus.Restored, method_name)

    def restore(self):
        """ Resolve and decode every harvested entry.  A failing entry is reported and skipped.

        Returns:
            list: one RestoreResult per entry, in harvest order.
        """
        if self.__state != RestorerState.Harvested:
            raise net_exceptions.OperationNotSupportedException()
        resolver = MetadataResolver(self.__dotnet)
        self.__results = list()
        for entry in self.__entries:
            result = self.restore_entry(resolver, entry)
            print(str(result))
            self.__results.append(result)
        restored = sum(1 for result in self.__results if result.is_restored())
        print('restored {} of {} cache entries'.format(restored, len(self.__results)))
        self.__state = RestorerState.Restored
        return self.get_results()

    def write(self, output_path):
        if self.__state != RestorerState.Restored:
            raise net_exceptions.OperationNotSupportedException()
        self.__dotnet.write(output_path)
        print('wrote {}'.format(output_path))
        self.__state = RestorerState.Written

    def run(self, output_path):
        self.harvest()
        results = self.restore()
        self.write(output_path)
        return results


def main():
    if len(sys.argv) not in (5, 6):
        print('Usage: net_restore.py <input file> <output file> <cache type> <cache field> [runtime]')
        print('cache type: full name of the type holding the method body cache.')
        print('cache field: name of the static dictionary field on that type.')
        print('runtime: netfx, coreclr or mono.  Defaults to the pythonnet default.')
        exit(1)
    input_file = sys.argv[1]
    output_file = sys.argv[2]
    type_name = sys.argv[3]
    field_name = sys.argv[4]
    runtime = sys.argv[5] if len(sys.argv) == 6 else None
    try:
        dotnet = dotnetpefile.DotNetPeFile(file_path=input_file)
        host = net_host.ClrHostModule(input_file, runtime=runtime)
        restorer = BodyRestorer(dotnet, host, type_name, field_name)
        restorer.run(output_file)
    except net_exceptions.DotNetRestoreException as e:
        print('error: {}'.format(e))
        exit(1)
    print('Done')


if __name__ == '__main__':
    main()
