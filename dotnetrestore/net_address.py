"""
Runtime key <-> RVA conversion.

The protection keys its body cache by an address inside the loaded image.  The observed key is
one past module base + method body RVA.  The bias is specific to the protection version it was
observed on and other versions may use a different value.
"""

RUNTIME_KEY_BIAS = 1


def to_rva(runtime_key: int, module_base: int, bias: int = RUNTIME_KEY_BIAS) -> int:
    return runtime_key - module_base - bias


def to_runtime_key(rva: int, module_base: int, bias: int = RUNTIME_KEY_BIAS) -> int:
    return module_base + rva + bias


class RuntimeAddress:
    def __init__(self, runtime_key: int, module_base: int, bias: int = RUNTIME_KEY_BIAS):
        self.__runtime_key = runtime_key
        self.__module_base = module_base
        self.__rva = to_rva(runtime_key, module_base, bias)

    def get_runtime_key(self):
        return self.__runtime_key

    def get_module_base(self):
        return self.__module_base

    def get_rva(self):
        return self.__rva

    def is_valid(self):
        """ A negative RVA can never name a method body (the sentinel key 0 lands here). """
        return self.__rva >= 0

    def __repr__(self):
        return 'RuntimeAddress(key={}, base={}, rva={})'.format(hex(self.__runtime_key), hex(self.__module_base),
                                                                hex(self.__rva))
