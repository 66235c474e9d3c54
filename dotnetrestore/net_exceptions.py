class DotNetRestoreException(Exception):
    def __init__(self):
        Exception.__init__(self, "Generic Dotnetrestore Exception")

class NotADotNetFile(DotNetRestoreException):
    def __init__(self):
        Exception.__init__(self, "The provided file is either corrupted or not a dotnet file.")

class FeatureNotImplementedException(DotNetRestoreException):
    def __init__(self):
        Exception.__init__(self, "Attempted to use a functionality that is not yet implemented.")

class OperationNotSupportedException(DotNetRestoreException):
    def __init__(self):
        Exception.__init__(self, "The operation attempted is not currently supported.")

class InvalidArgumentsException(DotNetRestoreException):
    def __init__(self, expected=None, actual=None):
        if expected == None and actual == None:
            Exception.__init__(self, "invalid arguments")
        else:
            Exception.__init__(self, 'Invalid arguments: expected={}, actual={}'.format(expected, actual))

class InvalidMetadataException(DotNetRestoreException):
    def __init__(self, reason='unknown'):
        Exception.__init__(self, "Failed to process metadata: {}".format(reason))

class InvalidHeaderException(DotNetRestoreException):
    def __init__(self, token=0):
        Exception.__init__(self, "Failed to process header. Method Token {}".format(hex(token)))

class InvalidTokenException(DotNetRestoreException):
    def __init__(self, token_type, value):
        Exception.__init__(self, 'A token with value {} is invalid for type {}'.format(hex(value), token_type))

class InvalidSignatureException(DotNetRestoreException):
    def __init__(self, sig_type):
        Exception.__init__(self, 'Attempted to parse an invalid signature of type {}'.format(sig_type))

class OpcodeLookupException(DotNetRestoreException):
    def __init__(self, opcode_value):
        Exception.__init__(self, "Could not find usable opcode {} in NET_OPCODE_DB.".format(hex(opcode_value)))

class InstructionDecodeException(DotNetRestoreException):
    def __init__(self, offset, reason):
        self.__offset = offset
        self.__reason = reason
        Exception.__init__(self, "Failed to decode instruction at offset {}: {}".format(hex(offset), reason))

    def get_offset(self):
        return self.__offset

    def get_reason(self):
        return self.__reason

class MethodTooLargeException(DotNetRestoreException):
    def __init__(self):
        Exception.__init__(self, "Method too large to process.")

class AmbiguousMethodException(DotNetRestoreException):
    def __init__(self, rva, row_count):
        self.__rva = rva
        Exception.__init__(self, 'The RVA {} matches {} MethodDef rows.'.format(hex(rva), row_count))

    def get_rva(self):
        return self.__rva

class CacheTypeNotFoundException(DotNetRestoreException):
    def __init__(self, type_name):
        Exception.__init__(self, 'The cache type {} does not exist in the loaded assembly.'.format(type_name))

class CacheFieldNotFoundException(DotNetRestoreException):
    def __init__(self, type_name, field_name):
        Exception.__init__(self, 'The cache field {} does not exist on type {}.'.format(field_name, type_name))

class HostLoadException(DotNetRestoreException):
    def __init__(self, file_path, reason):
        Exception.__init__(self, 'Failed to load {} into the host runtime: {}'.format(file_path, reason))

class ReconstructionFailedException(DotNetRestoreException):
    def __init__(self, reason='unknown'):
        Exception.__init__(self, "Failed to reconstruct executable: {}".format(reason))

class DotNetIOException(DotNetRestoreException):
    def __init__(self, path, cause):
        self.__cause = cause
        Exception.__init__(self, "Error during IO operation on {}: {}".format(path, cause))

    def get_cause(self):
        return self.__cause
