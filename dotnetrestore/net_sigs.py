from dotnetrestore import net_exceptions

"""
Just enough of the ECMA-335 signature format to know how a call changes the evaluation stack.
"""

SIG_HASTHIS = 0x20
SIG_EXPLICITTHIS = 0x40
SIG_GENERIC = 0x10
SIG_CALLCONV_MASK = 0x0F
SIG_FIELD = 0x06
SIG_LOCAL_SIG = 0x07
SIG_PROPERTY = 0x08

ELEMENT_TYPE_VOID = 0x01
ELEMENT_TYPE_CMOD_REQD = 0x1F
ELEMENT_TYPE_CMOD_OPT = 0x20


def read_compressed_uint(data, offset):
    """ Read an ECMA-335 compressed unsigned integer.

    Args:
        data (bytes): The buffer to read from.
        offset (int): Where the integer starts.

    Returns:
        tuple: (value, new offset)
    """
    if offset >= len(data):
        raise net_exceptions.InvalidSignatureException('compressed integer')
    first = data[offset]
    if first & 0x80 == 0:
        return first, offset + 1
    if first & 0xC0 == 0x80:
        if offset + 2 > len(data):
            raise net_exceptions.InvalidSignatureException('compressed integer')
        return ((first & 0x3F) << 8) | data[offset + 1], offset + 2
    if first & 0xE0 == 0xC0:
        if offset + 4 > len(data):
            raise net_exceptions.InvalidSignatureException('compressed integer')
        value = ((first & 0x1F) << 24) | (data[offset + 1] << 16) | (data[offset + 2] << 8) | data[offset + 3]
        return value, offset + 4
    raise net_exceptions.InvalidSignatureException('compressed integer')


class MethodSignature:
    def __init__(self, calling_convention, generic_param_count, param_count, returns_void):
        self.__calling_convention = calling_convention
        self.__generic_param_count = generic_param_count
        self.__param_count = param_count
        self.__returns_void = returns_void

    def has_this(self):
        return self.__calling_convention & SIG_HASTHIS != 0

    def has_explicit_this(self):
        return self.__calling_convention & SIG_EXPLICITTHIS != 0

    def is_generic(self):
        return self.__calling_convention & SIG_GENERIC != 0

    def get_calling_convention(self):
        return self.__calling_convention

    def get_generic_param_count(self):
        return self.__generic_param_count

    def get_param_count(self):
        return self.__param_count

    def returns_void(self):
        return self.__returns_void

    def get_stack_pops(self):
        """ Number of stack slots consumed by call / callvirt (arguments + this). """
        pops = self.__param_count
        if self.has_this() and not self.has_explicit_this():
            pops += 1
        return pops

    def get_stack_pushes(self):
        if self.__returns_void:
            return 0
        return 1

    def __repr__(self):
        return 'MethodSignature(conv={}, params={}, void={})'.format(hex(self.__calling_convention),
                                                                    self.__param_count, self.__returns_void)


def parse_method_signature(data):
    """ Parse a MethodDefSig / MethodRefSig / StandAloneMethodSig blob.

    Only the calling convention, parameter count and whether the return type is void are read.
    """
    if data is None or len(data) == 0:
        raise net_exceptions.InvalidSignatureException('method')
    calling_convention = data[0]
    if calling_convention & SIG_CALLCONV_MASK in (SIG_FIELD, SIG_LOCAL_SIG, SIG_PROPERTY):
        raise net_exceptions.InvalidSignatureException('method')
    offset = 1
    generic_param_count = 0
    if calling_convention & SIG_GENERIC:
        generic_param_count, offset = read_compressed_uint(data, offset)
    param_count, offset = read_compressed_uint(data, offset)
    while offset < len(data) and data[offset] in (ELEMENT_TYPE_CMOD_REQD, ELEMENT_TYPE_CMOD_OPT):
        _, offset = read_compressed_uint(data, offset + 1)
    if offset >= len(data):
        raise net_exceptions.InvalidSignatureException('method')
    returns_void = data[offset] == ELEMENT_TYPE_VOID
    return MethodSignature(calling_convention, generic_param_count, param_count, returns_void)
