from dotnetrestore import net_exceptions

"""
CIL opcode database (ECMA-335 Partition III).
Two byte opcodes are stored with their 0xFE prefix, e.g. ceq is 0xFE01.
Stack behaviour is stored as (pops, pushes).  VARIABLE means the behaviour depends on the
signature of the call target and is resolved by the recompiler.
"""

TWO_BYTE_PREFIX = 0xFE
VARIABLE = -1


class OperandType:
    InlineNone = 0
    ShortInlineVar = 1
    InlineVar = 2
    ShortInlineI = 3
    InlineI = 4
    InlineI8 = 5
    ShortInlineR = 6
    InlineR = 7
    ShortInlineBrTarget = 8
    InlineBrTarget = 9
    InlineSwitch = 10
    InlineMethod = 11
    InlineField = 12
    InlineType = 13
    InlineTok = 14
    InlineSig = 15
    InlineString = 16


OPERAND_SIZES = {
    OperandType.InlineNone: 0,
    OperandType.ShortInlineVar: 1,
    OperandType.InlineVar: 2,
    OperandType.ShortInlineI: 1,
    OperandType.InlineI: 4,
    OperandType.InlineI8: 8,
    OperandType.ShortInlineR: 4,
    OperandType.InlineR: 8,
    OperandType.ShortInlineBrTarget: 1,
    OperandType.InlineBrTarget: 4,
    OperandType.InlineMethod: 4,
    OperandType.InlineField: 4,
    OperandType.InlineType: 4,
    OperandType.InlineTok: 4,
    OperandType.InlineSig: 4,
    OperandType.InlineString: 4,
}


class FlowControl:
    Next = 0
    Branch = 1
    CondBranch = 2
    Return = 3
    Throw = 4
    Call = 5
    Meta = 6
    Break = 7


class OpcodeInfo:
    def __init__(self, value, name, operand_type, pops, pushes, flow_control):
        self.__value = value
        self.__name = name
        self.__operand_type = operand_type
        self.__pops = pops
        self.__pushes = pushes
        self.__flow_control = flow_control

    def get_value(self):
        return self.__value

    def get_name(self):
        return self.__name

    def get_operand_type(self):
        return self.__operand_type

    def get_pops(self):
        return self.__pops

    def get_pushes(self):
        return self.__pushes

    def get_flow_control(self):
        return self.__flow_control

    def get_size(self):
        """ Size of the opcode itself, without operand. """
        if self.__value > 0xFF:
            return 2
        return 1

    def get_operand_size(self):
        return OPERAND_SIZES.get(self.__operand_type, 0)

    def to_bytes(self):
        if self.__value > 0xFF:
            return int.to_bytes(self.__value, 2, 'big')
        return bytes([self.__value])

    def is_branch(self):
        return self.__operand_type in (OperandType.ShortInlineBrTarget, OperandType.InlineBrTarget)

    def is_short_branch(self):
        return self.__operand_type == OperandType.ShortInlineBrTarget

    def is_switch(self):
        return self.__operand_type == OperandType.InlineSwitch

    def ends_block(self):
        """ True when execution can never fall through to the next instruction. """
        return self.__flow_control in (FlowControl.Branch, FlowControl.Return, FlowControl.Throw)

    def __eq__(self, other):
        if isinstance(other, OpcodeInfo):
            return self.__value == other.__value
        return NotImplemented

    def __hash__(self):
        return hash(self.__value)

    def __repr__(self):
        return 'OpcodeInfo({}, {})'.format(self.__name, hex(self.__value))


_N = OperandType.InlineNone
_SV = OperandType.ShortInlineVar
_V = OperandType.InlineVar
_SI = OperandType.ShortInlineI
_I = OperandType.InlineI
_I8 = OperandType.InlineI8
_SR = OperandType.ShortInlineR
_R = OperandType.InlineR
_SBR = OperandType.ShortInlineBrTarget
_BR = OperandType.InlineBrTarget
_SW = OperandType.InlineSwitch
_M = OperandType.InlineMethod
_F = OperandType.InlineField
_T = OperandType.InlineType
_TOK = OperandType.InlineTok
_SIG = OperandType.InlineSig
_STR = OperandType.InlineString

_NEXT = FlowControl.Next
_BRANCH = FlowControl.Branch
_COND = FlowControl.CondBranch
_RET = FlowControl.Return
_THROW = FlowControl.Throw
_CALL = FlowControl.Call
_META = FlowControl.Meta
_BREAK = FlowControl.Break

_OPCODE_TABLE = [
    (0x00, 'nop', _N, 0, 0, _NEXT),
    (0x01, 'break', _N, 0, 0, _BREAK),
    (0x02, 'ldarg.0', _N, 0, 1, _NEXT),
    (0x03, 'ldarg.1', _N, 0, 1, _NEXT),
    (0x04, 'ldarg.2', _N, 0, 1, _NEXT),
    (0x05, 'ldarg.3', _N, 0, 1, _NEXT),
    (0x06, 'ldloc.0', _N, 0, 1, _NEXT),
    (0x07, 'ldloc.1', _N, 0, 1, _NEXT),
    (0x08, 'ldloc.2', _N, 0, 1, _NEXT),
    (0x09, 'ldloc.3', _N, 0, 1, _NEXT),
    (0x0A, 'stloc.0', _N, 1, 0, _NEXT),
    (0x0B, 'stloc.1', _N, 1, 0, _NEXT),
    (0x0C, 'stloc.2', _N, 1, 0, _NEXT),
    (0x0D, 'stloc.3', _N, 1, 0, _NEXT),
    (0x0E, 'ldarg.s', _SV, 0, 1, _NEXT),
    (0x0F, 'ldarga.s', _SV, 0, 1, _NEXT),
    (0x10, 'starg.s', _SV, 1, 0, _NEXT),
    (0x11, 'ldloc.s', _SV, 0, 1, _NEXT),
    (0x12, 'ldloca.s', _SV, 0, 1, _NEXT),
    (0x13, 'stloc.s', _SV, 1, 0, _NEXT),
    (0x14, 'ldnull', _N, 0, 1, _NEXT),
    (0x15, 'ldc.i4.m1', _N, 0, 1, _NEXT),
    (0x16, 'ldc.i4.0', _N, 0, 1, _NEXT),
    (0x17, 'ldc.i4.1', _N, 0, 1, _NEXT),
    (0x18, 'ldc.i4.2', _N, 0, 1, _NEXT),
    (0x19, 'ldc.i4.3', _N, 0, 1, _NEXT),
    (0x1A, 'ldc.i4.4', _N, 0, 1, _NEXT),
    (0x1B, 'ldc.i4.5', _N, 0, 1, _NEXT),
    (0x1C, 'ldc.i4.6', _N, 0, 1, _NEXT),
    (0x1D, 'ldc.i4.7', _N, 0, 1, _NEXT),
    (0x1E, 'ldc.i4.8', _N, 0, 1, _NEXT),
    (0x1F, 'ldc.i4.s', _SI, 0, 1, _NEXT),
    (0x20, 'ldc.i4', _I, 0, 1, _NEXT),
    (0x21, 'ldc.i8', _I8, 0, 1, _NEXT),
    (0x22, 'ldc.r4', _SR, 0, 1, _NEXT),
    (0x23, 'ldc.r8', _R, 0, 1, _NEXT),
    (0x25, 'dup', _N, 1, 2, _NEXT),
    (0x26, 'pop', _N, 1, 0, _NEXT),
    (0x27, 'jmp', _M, 0, 0, _CALL),
    (0x28, 'call', _M, VARIABLE, VARIABLE, _CALL),
    (0x29, 'calli', _SIG, VARIABLE, VARIABLE, _CALL),
    (0x2A, 'ret', _N, 0, 0, _RET),
    (0x2B, 'br.s', _SBR, 0, 0, _BRANCH),
    (0x2C, 'brfalse.s', _SBR, 1, 0, _COND),
    (0x2D, 'brtrue.s', _SBR, 1, 0, _COND),
    (0x2E, 'beq.s', _SBR, 2, 0, _COND),
    (0x2F, 'bge.s', _SBR, 2, 0, _COND),
    (0x30, 'bgt.s', _SBR, 2, 0, _COND),
    (0x31, 'ble.s', _SBR, 2, 0, _COND),
    (0x32, 'blt.s', _SBR, 2, 0, _COND),
    (0x33, 'bne.un.s', _SBR, 2, 0, _COND),
    (0x34, 'bge.un.s', _SBR, 2, 0, _COND),
    (0x35, 'bgt.un.s', _SBR, 2, 0, _COND),
    (0x36, 'ble.un.s', _SBR, 2, 0, _COND),
    (0x37, 'blt.un.s', _SBR, 2, 0, _COND),
    (0x38, 'br', _BR, 0, 0, _BRANCH),
    (0x39, 'brfalse', _BR, 1, 0, _COND),
    (0x3A, 'brtrue', _BR, 1, 0, _COND),
    (0x3B, 'beq', _BR, 2, 0, _COND),
    (0x3C, 'bge', _BR, 2, 0, _COND),
    (0x3D, 'bgt', _BR, 2, 0, _COND),
    (0x3E, 'ble', _BR, 2, 0, _COND),
    (0x3F, 'blt', _BR, 2, 0, _COND),
    (0x40, 'bne.un', _BR, 2, 0, _COND),
    (0x41, 'bge.un', _BR, 2, 0, _COND),
    (0x42, 'bgt.un', _BR, 2, 0, _COND),
    (0x43, 'ble.un', _BR, 2, 0, _COND),
    (0x44, 'blt.un', _BR, 2, 0, _COND),
    (0x45, 'switch', _SW, 1, 0, _COND),
    (0x46, 'ldind.i1', _N, 1, 1, _NEXT),
    (0x47, 'ldind.u1', _N, 1, 1, _NEXT),
    (0x48, 'ldind.i2', _N, 1, 1, _NEXT),
    (0x49, 'ldind.u2', _N, 1, 1, _NEXT),
    (0x4A, 'ldind.i4', _N, 1, 1, _NEXT),
    (0x4B, 'ldind.u4', _N, 1, 1, _NEXT),
    (0x4C, 'ldind.i8', _N, 1, 1, _NEXT),
    (0x4D, 'ldind.i', _N, 1, 1, _NEXT),
    (0x4E, 'ldind.r4', _N, 1, 1, _NEXT),
    (0x4F, 'ldind.r8', _N, 1, 1, _NEXT),
    (0x50, 'ldind.ref', _N, 1, 1, _NEXT),
    (0x51, 'stind.ref', _N, 2, 0, _NEXT),
    (0x52, 'stind.i1', _N, 2, 0, _NEXT),
    (0x53, 'stind.i2', _N, 2, 0, _NEXT),
    (0x54, 'stind.i4', _N, 2, 0, _NEXT),
    (0x55, 'stind.i8', _N, 2, 0, _NEXT),
    (0x56, 'stind.r4', _N, 2, 0, _NEXT),
    (0x57, 'stind.r8', _N, 2, 0, _NEXT),
    (0x58, 'add', _N, 2, 1, _NEXT),
    (0x59, 'sub', _N, 2, 1, _NEXT),
    (0x5A, 'mul', _N, 2, 1, _NEXT),
    (0x5B, 'div', _N, 2, 1, _NEXT),
    (0x5C, 'div.un', _N, 2, 1, _NEXT),
    (0x5D, 'rem', _N, 2, 1, _NEXT),
    (0x5E, 'rem.un', _N, 2, 1, _NEXT),
    (0x5F, 'and', _N, 2, 1, _NEXT),
    (0x60, 'or', _N, 2, 1, _NEXT),
    (0x61, 'xor', _N, 2, 1, _NEXT),
    (0x62, 'shl', _N, 2, 1, _NEXT),
    (0x63, 'shr', _N, 2, 1, _NEXT),
    (0x64, 'shr.un', _N, 2, 1, _NEXT),
    (0x65, 'neg', _N, 1, 1, _NEXT),
    (0x66, 'not', _N, 1, 1, _NEXT),
    (0x67, 'conv.i1', _N, 1, 1, _NEXT),
    (0x68, 'conv.i2', _N, 1, 1, _NEXT),
    (0x69, 'conv.i4', _N, 1, 1, _NEXT),
    (0x6A, 'conv.i8', _N, 1, 1, _NEXT),
    (0x6B, 'conv.r4', _N, 1, 1, _NEXT),
    (0x6C, 'conv.r8', _N, 1, 1, _NEXT),
    (0x6D, 'conv.u4', _N, 1, 1, _NEXT),
    (0x6E, 'conv.u8', _N, 1, 1, _NEXT),
    (0x6F, 'callvirt', _M, VARIABLE, VARIABLE, _CALL),
    (0x70, 'cpobj', _T, 2, 0, _NEXT),
    (0x71, 'ldobj', _T, 1, 1, _NEXT),
    (0x72, 'ldstr', _STR, 0, 1, _NEXT),
    (0x73, 'newobj', _M, VARIABLE, 1, _CALL),
    (0x74, 'castclass', _T, 1, 1, _NEXT),
    (0x75, 'isinst', _T, 1, 1, _NEXT),
    (0x76, 'conv.r.un', _N, 1, 1, _NEXT),
    (0x79, 'unbox', _T, 1, 1, _NEXT),
    (0x7A, 'throw', _N, 1, 0, _THROW),
    (0x7B, 'ldfld', _F, 1, 1, _NEXT),
    (0x7C, 'ldflda', _F, 1, 1, _NEXT),
    (0x7D, 'stfld', _F, 2, 0, _NEXT),
    (0x7E, 'ldsfld', _F, 0, 1, _NEXT),
    (0x7F, 'ldsflda', _F, 0, 1, _NEXT),
    (0x80, 'stsfld', _F, 1, 0, _NEXT),
    (0x81, 'stobj', _T, 2, 0, _NEXT),
    (0x82, 'conv.ovf.i1.un', _N, 1, 1, _NEXT),
    (0x83, 'conv.ovf.i2.un', _N, 1, 1, _NEXT),
    (0x84, 'conv.ovf.i4.un', _N, 1, 1, _NEXT),
    (0x85, 'conv.ovf.i8.un', _N, 1, 1, _NEXT),
    (0x86, 'conv.ovf.u1.un', _N, 1, 1, _NEXT),
    (0x87, 'conv.ovf.u2.un', _N, 1, 1, _NEXT),
    (0x88, 'conv.ovf.u4.un', _N, 1, 1, _NEXT),
    (0x89, 'conv.ovf.u8.un', _N, 1, 1, _NEXT),
    (0x8A, 'conv.ovf.i.un', _N, 1, 1, _NEXT),
    (0x8B, 'conv.ovf.u.un', _N, 1, 1, _NEXT),
    (0x8C, 'box', _T, 1, 1, _NEXT),
    (0x8D, 'newarr', _T, 1, 1, _NEXT),
    (0x8E, 'ldlen', _N, 1, 1, _NEXT),
    (0x8F, 'ldelema', _T, 2, 1, _NEXT),
    (0x90, 'ldelem.i1', _N, 2, 1, _NEXT),
    (0x91, 'ldelem.u1', _N, 2, 1, _NEXT),
    (0x92, 'ldelem.i2', _N, 2, 1, _NEXT),
    (0x93, 'ldelem.u2', _N, 2, 1, _NEXT),
    (0x94, 'ldelem.i4', _N, 2, 1, _NEXT),
    (0x95, 'ldelem.u4', _N, 2, 1, _NEXT),
    (0x96, 'ldelem.i8', _N, 2, 1, _NEXT),
    (0x97, 'ldelem.i', _N, 2, 1, _NEXT),
    (0x98, 'ldelem.r4', _N, 2, 1, _NEXT),
    (0x99, 'ldelem.r8', _N, 2, 1, _NEXT),
    (0x9A, 'ldelem.ref', _N, 2, 1, _NEXT),
    (0x9B, 'stelem.i', _N, 3, 0, _NEXT),
    (0x9C, 'stelem.i1', _N, 3, 0, _NEXT),
    (0x9D, 'stelem.i2', _N, 3, 0, _NEXT),
    (0x9E, 'stelem.i4', _N, 3, 0, _NEXT),
    (0x9F, 'stelem.i8', _N, 3, 0, _NEXT),
    (0xA0, 'stelem.r4', _N, 3, 0, _NEXT),
    (0xA1, 'stelem.r8', _N, 3, 0, _NEXT),
    (0xA2, 'stelem.ref', _N, 3, 0, _NEXT),
    (0xA3, 'ldelem', _T, 2, 1, _NEXT),
    (0xA4, 'stelem', _T, 3, 0, _NEXT),
    (0xA5, 'unbox.any', _T, 1, 1, _NEXT),
    (0xB3, 'conv.ovf.i1', _N, 1, 1, _NEXT),
    (0xB4, 'conv.ovf.u1', _N, 1, 1, _NEXT),
    (0xB5, 'conv.ovf.i2', _N, 1, 1, _NEXT),
    (0xB6, 'conv.ovf.u2', _N, 1, 1, _NEXT),
    (0xB7, 'conv.ovf.i4', _N, 1, 1, _NEXT),
    (0xB8, 'conv.ovf.u4', _N, 1, 1, _NEXT),
    (0xB9, 'conv.ovf.i8', _N, 1, 1, _NEXT),
    (0xBA, 'conv.ovf.u8', _N, 1, 1, _NEXT),
    (0xC2, 'refanyval', _T, 1, 1, _NEXT),
    (0xC3, 'ckfinite', _N, 1, 1, _NEXT),
    (0xC6, 'mkrefany', _T, 1, 1, _NEXT),
    (0xD0, 'ldtoken', _TOK, 0, 1, _NEXT),
    (0xD1, 'conv.u2', _N, 1, 1, _NEXT),
    (0xD2, 'conv.u1', _N, 1, 1, _NEXT),
    (0xD3, 'conv.i', _N, 1, 1, _NEXT),
    (0xD4, 'conv.ovf.i', _N, 1, 1, _NEXT),
    (0xD5, 'conv.ovf.u', _N, 1, 1, _NEXT),
    (0xD6, 'add.ovf', _N, 2, 1, _NEXT),
    (0xD7, 'add.ovf.un', _N, 2, 1, _NEXT),
    (0xD8, 'mul.ovf', _N, 2, 1, _NEXT),
    (0xD9, 'mul.ovf.un', _N, 2, 1, _NEXT),
    (0xDA, 'sub.ovf', _N, 2, 1, _NEXT),
    (0xDB, 'sub.ovf.un', _N, 2, 1, _NEXT),
    (0xDC, 'endfinally', _N, 0, 0, _RET),
    (0xDD, 'leave', _BR, 0, 0, _BRANCH),
    (0xDE, 'leave.s', _SBR, 0, 0, _BRANCH),
    (0xDF, 'stind.i', _N, 2, 0, _NEXT),
    (0xE0, 'conv.u', _N, 1, 1, _NEXT),
    (0xFE00, 'arglist', _N, 0, 1, _NEXT),
    (0xFE01, 'ceq', _N, 2, 1, _NEXT),
    (0xFE02, 'cgt', _N, 2, 1, _NEXT),
    (0xFE03, 'cgt.un', _N, 2, 1, _NEXT),
    (0xFE04, 'clt', _N, 2, 1, _NEXT),
    (0xFE05, 'clt.un', _N, 2, 1, _NEXT),
    (0xFE06, 'ldftn', _M, 0, 1, _NEXT),
    (0xFE07, 'ldvirtftn', _M, 1, 1, _NEXT),
    (0xFE09, 'ldarg', _V, 0, 1, _NEXT),
    (0xFE0A, 'ldarga', _V, 0, 1, _NEXT),
    (0xFE0B, 'starg', _V, 1, 0, _NEXT),
    (0xFE0C, 'ldloc', _V, 0, 1, _NEXT),
    (0xFE0D, 'ldloca', _V, 0, 1, _NEXT),
    (0xFE0E, 'stloc', _V, 1, 0, _NEXT),
    (0xFE0F, 'localloc', _N, 1, 1, _NEXT),
    (0xFE11, 'endfilter', _N, 1, 0, _RET),
    (0xFE12, 'unaligned.', _SI, 0, 0, _META),
    (0xFE13, 'volatile.', _N, 0, 0, _META),
    (0xFE14, 'tail.', _N, 0, 0, _META),
    (0xFE15, 'initobj', _T, 1, 0, _NEXT),
    (0xFE16, 'constrained.', _T, 0, 0, _META),
    (0xFE17, 'cpblk', _N, 3, 0, _NEXT),
    (0xFE18, 'initblk', _N, 3, 0, _NEXT),
    (0xFE19, 'no.', _SI, 0, 0, _META),
    (0xFE1A, 'rethrow', _N, 0, 0, _THROW),
    (0xFE1C, 'sizeof', _T, 0, 1, _NEXT),
    (0xFE1D, 'refanytype', _N, 1, 1, _NEXT),
    (0xFE1E, 'readonly.', _N, 0, 0, _META),
]


class Opcodes:
    """ Opcode values by name, e.g. Opcodes.Ldc_I4_S == 0x1F.  Filled in from _OPCODE_TABLE. """


def _attr_name(mnemonic):
    return '_'.join(part.capitalize() for part in mnemonic.rstrip('.').split('.'))


NET_OPCODE_DB = dict()
NET_OPCODE_BY_NAME = dict()
for _value, _name, _operand, _pops, _pushes, _flow in _OPCODE_TABLE:
    _info = OpcodeInfo(_value, _name, _operand, _pops, _pushes, _flow)
    NET_OPCODE_DB[_value] = _info
    NET_OPCODE_BY_NAME[_name] = _info
    setattr(Opcodes, _attr_name(_name), _value)

#short branch opcode -> long branch opcode
SHORT_TO_LONG_BRANCH = {value: value + 0x0D for value in range(0x2B, 0x38)}
SHORT_TO_LONG_BRANCH[0xDE] = 0xDD


def get_opcode(value):
    """ Obtain the OpcodeInfo for an opcode value.

    Args:
        value (int): one byte opcode, or 0xFEXX for two byte opcodes.

    Returns:
        OpcodeInfo: The opcode description.

    Raises:
        net_exceptions.OpcodeLookupException: when the value is not a defined opcode.
    """
    info = NET_OPCODE_DB.get(value)
    if info is None:
        raise net_exceptions.OpcodeLookupException(value)
    return info


def get_opcode_by_name(name):
    info = NET_OPCODE_BY_NAME.get(name)
    if info is None:
        raise net_exceptions.InvalidArgumentsException(expected='opcode mnemonic', actual=name)
    return info


def get_long_form(info):
    """ Returns the long branch form for a short branch opcode. """
    return get_opcode(SHORT_TO_LONG_BRANCH[info.get_value()])
