import struct
from dotnetrestore import net_exceptions, net_opcodes, net_recompiler
from dotnetrestore.net_opcodes import OperandType, TWO_BYTE_PREFIX
from dotnetrestore.net_structs import CorILMethod, align_up
from dotnetrestore.net_tokens import MetadataToken, TokenTable

"""
CIL method body reading and the instruction codec.

disassemble() turns raw IL bytes into Instruction objects whose arguments are already resolved
against the module: tokens become row objects, ldstr operands become UserString objects and
branch operands become the target Instruction.  install_instructions() puts such a sequence
into a MethodBody, net_recompiler turns a MethodBody back into bytes.
"""

ALLOWED_TOKEN_TABLES = {
    OperandType.InlineMethod: (TokenTable.MethodDef, TokenTable.MemberRef, TokenTable.MethodSpec),
    OperandType.InlineField: (TokenTable.Field, TokenTable.MemberRef),
    OperandType.InlineType: (TokenTable.TypeDef, TokenTable.TypeRef, TokenTable.TypeSpec),
    OperandType.InlineTok: (TokenTable.TypeDef, TokenTable.TypeRef, TokenTable.TypeSpec, TokenTable.Field,
                            TokenTable.MethodDef, TokenTable.MemberRef, TokenTable.MethodSpec),
    OperandType.InlineSig: (TokenTable.StandAloneSig,),
    OperandType.InlineString: (TokenTable.UserString,),
}

#ldc.i4.s is the only ShortInlineI with a signed operand, unaligned. and no. take flags.
SIGNED_SHORT_INLINE_I = (net_opcodes.Opcodes.Ldc_I4_S,)


class UserString:
    """ ldstr operand: the #US heap entry together with the token that names it. """

    def __init__(self, token, value):
        self.__token = token
        self.__value = value

    def get_token(self):
        return self.__token

    def get_value(self):
        return self.__value

    def __eq__(self, other):
        if isinstance(other, UserString):
            return self.__token == other.__token and self.__value == other.__value
        return NotImplemented

    def __hash__(self):
        return hash((self.__token, self.__value))

    def __str__(self):
        return '"{}"'.format(self.__value)

    def __repr__(self):
        return 'UserString({}, {!r})'.format(hex(self.__token), self.__value)


class Instruction:
    def __init__(self, opcode, argument=None, offset=-1, index=-1):
        """ Setup a new Instruction

        Args:
            opcode (net_opcodes.OpcodeInfo or int): The opcode, or its value.
            argument: The resolved operand (int, float, row object, UserString, Instruction or list of Instruction).
            offset (int): Byte offset within the method code, -1 when not laid out yet.
            index (int): Position within the method's instruction list.
        """
        if not isinstance(opcode, net_opcodes.OpcodeInfo):
            opcode = net_opcodes.get_opcode(opcode)
        self.__opcode = opcode
        self.__argument = argument
        self.__offset = offset
        self.__index = index

    def get_opcode(self):
        return self.__opcode

    def set_opcode(self, opcode):
        self.__opcode = opcode

    def get_name(self):
        return self.__opcode.get_name()

    def get_argument(self):
        return self.__argument

    def set_argument(self, argument):
        self.__argument = argument

    def get_instr_offset(self):
        return self.__offset

    def set_instr_offset(self, offset):
        self.__offset = offset

    def get_instr_index(self):
        return self.__index

    def set_instr_index(self, index):
        self.__index = index

    def is_branch(self):
        return self.__opcode.is_branch()

    def is_switch(self):
        return self.__opcode.is_switch()

    def get_branch_targets(self):
        if self.is_branch():
            return [self.__argument]
        if self.is_switch():
            return list(self.__argument)
        return []

    def __len__(self):
        size = self.__opcode.get_size()
        if self.is_switch():
            return size + 4 + 4 * len(self.__argument)
        return size + self.__opcode.get_operand_size()

    def to_bytes(self):
        """ Encode the instruction.  Branch displacements use the current offsets of this
        instruction and its targets, so the method must be laid out first.
        """
        result = bytearray(self.__opcode.to_bytes())
        operand_type = self.__opcode.get_operand_type()
        arg = self.__argument
        if operand_type == OperandType.InlineNone:
            pass
        elif operand_type == OperandType.ShortInlineVar:
            result.extend(int.to_bytes(arg, 1, 'little'))
        elif operand_type == OperandType.InlineVar:
            result.extend(int.to_bytes(arg, 2, 'little'))
        elif operand_type == OperandType.ShortInlineI:
            result.extend(int.to_bytes(arg & 0xFF, 1, 'little'))
        elif operand_type == OperandType.InlineI:
            result.extend(int.to_bytes(arg, 4, 'little', signed=True))
        elif operand_type == OperandType.InlineI8:
            result.extend(int.to_bytes(arg, 8, 'little', signed=True))
        elif operand_type == OperandType.ShortInlineR:
            result.extend(struct.pack('<f', arg))
        elif operand_type == OperandType.InlineR:
            result.extend(struct.pack('<d', arg))
        elif operand_type in (OperandType.ShortInlineBrTarget, OperandType.InlineBrTarget):
            end_offset = self.__offset + len(self)
            displacement = arg.get_instr_offset() - end_offset
            size = self.__opcode.get_operand_size()
            result.extend(int.to_bytes(displacement, size, 'little', signed=True))
        elif operand_type == OperandType.InlineSwitch:
            end_offset = self.__offset + len(self)
            result.extend(int.to_bytes(len(arg), 4, 'little'))
            for target in arg:
                result.extend(int.to_bytes(target.get_instr_offset() - end_offset, 4, 'little', signed=True))
        else:
            result.extend(int.to_bytes(arg.get_token(), 4, 'little'))
        return bytes(result)

    def __str__(self):
        arg = self.__argument
        if arg is None:
            arg_str = ''
        elif isinstance(arg, Instruction):
            arg_str = 'IL_{:04x}'.format(arg.get_instr_offset())
        elif isinstance(arg, list):
            arg_str = '(' + ', '.join('IL_{:04x}'.format(t.get_instr_offset()) for t in arg) + ')'
        else:
            arg_str = str(arg)
        return 'IL_{:04x}: {} {}'.format(self.__offset, self.get_name(), arg_str).rstrip()

    def __repr__(self):
        return '<Instruction {}>'.format(str(self))


class MethodBody:
    def __init__(self, max_stack=8, code=b'', local_var_sig_tok=0, init_locals=False, exception_blocks=None,
                 header_size=0, total_size=0, is_tiny=False):
        """ A method body: the header of the on-disk body plus a replaceable instruction list.

        Args:
            exception_blocks (list): tuples of (flags, try offset, try length, handler offset, handler length, token or filter offset)
            total_size (int): bytes occupied on disk by header, code and extra sections.
        """
        self.__max_stack = max_stack
        self.__code = code
        self.__local_var_sig_tok = local_var_sig_tok
        self.__init_locals = init_locals
        self.__exception_blocks = list(exception_blocks) if exception_blocks else list()
        self.__header_size = header_size
        self.__total_size = total_size
        self.__is_tiny = is_tiny
        self.__instrs = list()
        self.__modified = False
        self.__compiled = None

    def get_max_stack(self):
        return self.__max_stack

    def get_code(self):
        return self.__code

    def get_local_var_sig_token(self):
        return self.__local_var_sig_tok

    def get_init_locals(self):
        return self.__init_locals

    def get_exception_blocks(self):
        return list(self.__exception_blocks)

    def get_header_size(self):
        return self.__header_size

    def get_total_size(self):
        return self.__total_size

    def is_tiny(self):
        return self.__is_tiny

    def is_modified(self):
        return self.__modified

    def get_instrs(self):
        return list(self.__instrs)

    def clear_instrs(self):
        self.__instrs = list()
        self.__modified = True
        self.__compiled = None

    def append_instr(self, instr):
        instr.set_instr_index(len(self.__instrs))
        self.__instrs.append(instr)
        self.__modified = True
        self.__compiled = None

    def set_compiled(self, compiled):
        """ Keep bytes already produced for the current instructions, compile() returns them as is. """
        self.__compiled = compiled

    def compile(self):
        """ Serialize header + instructions + exception sections.  The result is kept until the instructions change. """
        if self.__compiled is None:
            recompiler = net_recompiler.MethodRecompiler(self.get_instrs(), self.get_exception_blocks(),
                                                         self.__local_var_sig_tok, self.__init_locals)
            self.__compiled = recompiler.compile_method()
        return self.__compiled

    def __iter__(self):
        return iter(self.__instrs)

    def __len__(self):
        return len(self.__instrs)

    def __getitem__(self, index):
        return self.__instrs[index]


def _parse_exception_sections(data, offset, token):
    blocks = list()
    while True:
        offset = align_up(offset, 4)
        if offset + 4 > len(data):
            raise net_exceptions.InvalidHeaderException(token)
        kind = data[offset]
        if kind & CorILMethod.Sect_FatFormat:
            data_size = int.from_bytes(data[offset + 1:offset + 4], 'little')
            clause_size = 24
        else:
            data_size = data[offset + 1]
            clause_size = 12
        if data_size < 4 or offset + data_size > len(data):
            raise net_exceptions.InvalidHeaderException(token)
        if kind & CorILMethod.Sect_EHTable:
            clause_offset = offset + 4
            for _ in range((data_size - 4) // clause_size):
                if clause_size == 24:
                    values = struct.unpack_from('<IIIIII', data, clause_offset)
                else:
                    values = struct.unpack_from('<HHBHBI', data, clause_offset)
                blocks.append(tuple(values))
                clause_offset += clause_size
        offset += data_size
        if not kind & CorILMethod.Sect_MoreSects:
            return blocks, offset


def parse_method_body(data, offset, token=0):
    """ Parse a tiny or fat method body starting at a file offset.

    Args:
        data (bytes): The raw file.
        offset (int): File offset of the method header.
        token (int): Method token, for error reporting.

    Returns:
        MethodBody: header information and the original code bytes.

    Raises:
        net_exceptions.InvalidHeaderException: the header is not a valid tiny or fat header.
    """
    if offset is None or offset < 0 or offset >= len(data):
        raise net_exceptions.InvalidHeaderException(token)
    first = data[offset]
    if first & CorILMethod.FormatMask == CorILMethod.TinyFormat:
        code_size = first >> 2
        code_start = offset + 1
        if code_start + code_size > len(data):
            raise net_exceptions.InvalidHeaderException(token)
        code = bytes(data[code_start:code_start + code_size])
        return MethodBody(8, code, 0, False, None, 1, 1 + code_size, True)
    if first & CorILMethod.FormatMask != CorILMethod.FatFormat or offset + 12 > len(data):
        raise net_exceptions.InvalidHeaderException(token)
    flags_and_size = int.from_bytes(data[offset:offset + 2], 'little')
    flags = flags_and_size & 0x0FFF
    header_size = (flags_and_size >> 12) * 4
    if header_size < 12:
        raise net_exceptions.InvalidHeaderException(token)
    max_stack = int.from_bytes(data[offset + 2:offset + 4], 'little')
    code_size = int.from_bytes(data[offset + 4:offset + 8], 'little')
    local_var_sig_tok = int.from_bytes(data[offset + 8:offset + 12], 'little')
    code_start = offset + header_size
    code_end = code_start + code_size
    if code_end > len(data):
        raise net_exceptions.InvalidHeaderException(token)
    code = bytes(data[code_start:code_end])
    blocks = list()
    end = code_end
    if flags & CorILMethod.MoreSects:
        blocks, end = _parse_exception_sections(data, code_end, token)
    return MethodBody(max_stack, code, local_var_sig_tok, flags & CorILMethod.InitLocals != 0, blocks, header_size,
                      end - offset, False)


def _resolve_token(dotnet, operand_type, token_value, offset, method_name):
    token = MetadataToken.from_value(token_value)
    if token.get_table_index() not in ALLOWED_TOKEN_TABLES[operand_type]:
        raise net_exceptions.InstructionDecodeException(
            offset, 'token {} ({}) is not valid for this operand in {}'.format(hex(token_value), token.get_table_name(),
                                                                               method_name))
    if token.get_table_index() == TokenTable.UserString:
        value = dotnet.get_user_string(token.get_row_index())
        if value is None:
            raise net_exceptions.InstructionDecodeException(
                offset, 'user string {} does not exist in {}'.format(hex(token_value), method_name))
        return UserString(token_value, value)
    result = dotnet.get_token_value(token_value)
    if result is None:
        raise net_exceptions.InstructionDecodeException(
            offset, 'token {} does not resolve in {}'.format(hex(token_value), method_name))
    return result


def disassemble(blob, method, dotnet):
    """ Decode raw IL bytes into resolved instructions.

    Args:
        blob (bytes): The IL code, no method header.
        method (net_row_objects.MethodDef): The method the code belongs to (used for error context).
        dotnet: The module the tokens are resolved against (see dotnetpefile.DotNetPeFile).

    Returns:
        list: Instruction objects in address order.

    Raises:
        net_exceptions.InstructionDecodeException: for the first instruction that cannot be decoded.
    """
    method_name = method.get_full_name() if method is not None else 'unknown method'
    instrs = list()
    by_offset = dict()
    pending_branches = list()
    offset = 0
    blob_len = len(blob)
    while offset < blob_len:
        start = offset
        value = blob[offset]
        offset += 1
        if value == TWO_BYTE_PREFIX:
            if offset >= blob_len:
                raise net_exceptions.InstructionDecodeException(start, 'truncated two byte opcode')
            value = (TWO_BYTE_PREFIX << 8) | blob[offset]
            offset += 1
        try:
            opcode = net_opcodes.get_opcode(value)
        except net_exceptions.OpcodeLookupException as e:
            raise net_exceptions.InstructionDecodeException(start, str(e))

        operand_type = opcode.get_operand_type()
        if operand_type == OperandType.InlineSwitch:
            if offset + 4 > blob_len:
                raise net_exceptions.InstructionDecodeException(start, 'truncated switch count')
            count = int.from_bytes(blob[offset:offset + 4], 'little')
            offset += 4
            if offset + 4 * count > blob_len:
                raise net_exceptions.InstructionDecodeException(start, 'truncated switch table')
            end_offset = offset + 4 * count
            targets = list()
            for x in range(count):
                delta = int.from_bytes(blob[offset + 4 * x:offset + 4 * x + 4], 'little', signed=True)
                targets.append(end_offset + delta)
            offset = end_offset
            instr = Instruction(opcode, None, start, len(instrs))
            pending_branches.append((instr, targets))
        else:
            size = opcode.get_operand_size()
            if offset + size > blob_len:
                raise net_exceptions.InstructionDecodeException(start, 'truncated operand for {}'.format(opcode.get_name()))
            raw = blob[offset:offset + size]
            offset += size
            argument = None
            if operand_type == OperandType.ShortInlineVar:
                argument = raw[0]
            elif operand_type == OperandType.InlineVar:
                argument = int.from_bytes(raw, 'little')
            elif operand_type == OperandType.ShortInlineI:
                argument = int.from_bytes(raw, 'little', signed=value in SIGNED_SHORT_INLINE_I)
            elif operand_type in (OperandType.InlineI, OperandType.InlineI8):
                argument = int.from_bytes(raw, 'little', signed=True)
            elif operand_type == OperandType.ShortInlineR:
                argument = struct.unpack('<f', raw)[0]
            elif operand_type == OperandType.InlineR:
                argument = struct.unpack('<d', raw)[0]
            elif operand_type in (OperandType.ShortInlineBrTarget, OperandType.InlineBrTarget):
                delta = int.from_bytes(raw, 'little', signed=True)
                instr = Instruction(opcode, None, start, len(instrs))
                pending_branches.append((instr, offset + delta))
            elif operand_type != OperandType.InlineNone:
                argument = _resolve_token(dotnet, operand_type, int.from_bytes(raw, 'little'), start, method_name)
            if not opcode.is_branch():
                instr = Instruction(opcode, argument, start, len(instrs))
        instrs.append(instr)
        by_offset[start] = instr

    for instr, targets in pending_branches:
        if isinstance(targets, list):
            resolved = list()
            for target in targets:
                if target not in by_offset:
                    raise net_exceptions.InstructionDecodeException(
                        instr.get_instr_offset(), 'switch target {} is not an instruction boundary'.format(hex(target)))
                resolved.append(by_offset[target])
            instr.set_argument(resolved)
        else:
            if targets not in by_offset:
                raise net_exceptions.InstructionDecodeException(
                    instr.get_instr_offset(), 'branch target {} is not an instruction boundary'.format(hex(targets)))
            instr.set_argument(by_offset[targets])
    return instrs


def install_instructions(instrs, method_body, compiled=None):
    """ Replace every instruction of method_body with instrs, in order.
    compiled, when given, is the already serialized form of instrs.
    """
    method_body.clear_instrs()
    for instr in instrs:
        method_body.append_instr(instr)
    if compiled is not None:
        method_body.set_compiled(compiled)
