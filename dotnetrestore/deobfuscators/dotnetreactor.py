from dotnetrestore.deobfuscators.deobfuscator import Deobfuscator
from dotnetrestore import net_address, net_exceptions, net_host, net_restore

#DeobfuscatorContext keys
CACHE_TYPE_NAME = 'CacheTypeName'
CACHE_FIELD_NAME = 'CacheFieldName'
RUNTIME_KEY_BIAS = 'RuntimeKeyBias'
CLR_RUNTIME = 'ClrRuntime'
HOST_MODULE = 'HostModule'
RESTORE_RESULTS = 'RestoreResults'

class NETReactor(Deobfuscator):

    NAME = 'DotNetReactor'

    def __init__(self):
        pass

    def identify_unpack(self, dotnet, ctx):
        return False
    
    def identify_deobfuscate(self, dotnet, ctx):
        # the cache location differs per protected sample and has to be supplied
        return ctx.has_item(CACHE_TYPE_NAME) and ctx.has_item(CACHE_FIELD_NAME)

    def unpack(self, dotnet, ctx):
        raise net_exceptions.OperationNotSupportedException()

    def get_host(self, dotnet, ctx):
        if ctx.has_item(HOST_MODULE):
            return ctx.get_item(HOST_MODULE)
        if dotnet.get_file_path() is None:
            raise net_exceptions.InvalidArgumentsException(expected='a module read from a file', actual=None)
        return net_host.ClrHostModule(dotnet.get_file_path(), runtime=ctx.get_item_or_default(CLR_RUNTIME))

    def fix_encrypted_methods(self, dotnet, ctx):
        """
        Put back the method bodies the protection only hands to the JIT.
        The sample is loaded in the host, its body cache is read and every entry is decoded
        into the method it belongs to.  Nothing is written, call dotnet.write() afterwards.
        :return: a list of net_restore.RestoreResult
        """
        restorer = net_restore.BodyRestorer(dotnet, self.get_host(dotnet, ctx), ctx.get_item(CACHE_TYPE_NAME),
                                            ctx.get_item(CACHE_FIELD_NAME),
                                            ctx.get_item_or_default(RUNTIME_KEY_BIAS, net_address.RUNTIME_KEY_BIAS))
        restorer.harvest()
        results = restorer.restore()
        ctx.set_item(RESTORE_RESULTS, results)
        return results

    def deobfuscate(self, dotnet, ctx):
        results = self.fix_encrypted_methods(dotnet, ctx)
        return any(result.is_restored() for result in results)
