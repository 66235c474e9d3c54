import sys
from dotnetrestore.deobfuscators import dotnetreactor
from dotnetrestore.deobfuscators.deobfuscator import DeobfuscatorContext
from dotnetrestore.deobfuscators.dotnetreactor import NETReactor
from dotnetrestore import dotnetpefile, net_exceptions

DEOBFUSCATORS = [NETReactor]


def print_usage():
    print('Usage: net_deobfuscate.py <deob type> <input file> <output file> <extra args>')
    print('Types:')
    print('restore: Puts back method bodies held in a runtime cache.  Extra args: <cache type> <cache field> [runtime] [key bias]')
    print('disas: Prints the disassembly of a method.  The output file argument is the method rid.')
    print('deob: Runs a file against the list of deobfuscators.  Extra args: <cache type> <cache field> [runtime]')


def build_context(args):
    ctx = DeobfuscatorContext()
    if len(args) > 0:
        ctx.set_item(dotnetreactor.CACHE_TYPE_NAME, args[0])
    if len(args) > 1:
        ctx.set_item(dotnetreactor.CACHE_FIELD_NAME, args[1])
    if len(args) > 2:
        ctx.set_item(dotnetreactor.CLR_RUNTIME, args[2])
    if len(args) > 3:
        ctx.set_item(dotnetreactor.RUNTIME_KEY_BIAS, int(args[3], 0))
    return ctx


def run_deobfuscators(dotnet, ctx):
    deobfuscated = False
    for deob_class in DEOBFUSCATORS:
        deob = deob_class()
        if deob.identify_unpack(dotnet, ctx):
            print('Executable recognized as {} packed executable.'.format(deob.NAME))
            deob.unpack(dotnet, ctx)
            continue
        if deob.identify_deobfuscate(dotnet, ctx):
            print('Executable recognized as {} obfuscated executable.'.format(deob.NAME))
            if deob.deobfuscate(dotnet, ctx):
                print('Deobfuscation completed for {}'.format(deob.NAME))
                deobfuscated = True
            else:
                print('Deobfuscation failed for {}'.format(deob.NAME))
    return deobfuscated


def main():
    if len(sys.argv) < 4:
        print_usage()
        exit()
    deob_type = sys.argv[1]
    obf_exe = sys.argv[2]
    output_exe = sys.argv[3]
    if deob_type not in ('disas', 'restore', 'deob'):
        print('invalid mode')
        exit()
    ctx = build_context(sys.argv[4:])
    if deob_type == 'restore' and (not ctx.has_item(dotnetreactor.CACHE_TYPE_NAME) or
                                   not ctx.has_item(dotnetreactor.CACHE_FIELD_NAME)):
        print_usage()
        exit()
    try:
        dotnet = dotnetpefile.try_get_dotnetpe(file_path=obf_exe)
        if dotnet is None:
            print('Not a dotnet file.')
            exit(0)
        if deob_type == 'disas':
            method = dotnet.get_method_by_rid(int(output_exe, 0))
            if method is None:
                print('error: no method with rid {}'.format(output_exe))
                exit(0)
            print(method.get_full_name())
            for instr in method.disassemble_method():
                print(instr)
            exit(0)
        elif deob_type == 'restore':
            NETReactor().fix_encrypted_methods(dotnet, ctx)
        elif not run_deobfuscators(dotnet, ctx):
            print('Nothing was deobfuscated.')
            exit(0)
        dotnet.write(output_exe)
    except net_exceptions.DotNetRestoreException as e:
        print('error: {}'.format(e))
        exit(1)
    print('Done')


if __name__ == '__main__':
    main()
