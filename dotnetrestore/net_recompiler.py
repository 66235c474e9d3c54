from dotnetrestore import net_exceptions, net_opcodes, net_structs
from dotnetrestore.net_opcodes import VARIABLE, Opcodes


def calc_int_size(num: int):
    return (num.bit_length() + 7) // 8


def get_stack_behaviour(instr):
    """ Obtain (pops, pushes) for an instruction, reading the call signature when needed. """
    opcode = instr.get_opcode()
    pops = opcode.get_pops()
    pushes = opcode.get_pushes()
    if pops != VARIABLE and pushes != VARIABLE:
        return pops, pushes
    arg = instr.get_argument()
    try:
        msig = arg.get_method_signature()
    except (AttributeError, net_exceptions.InvalidSignatureException):
        #unknown target, assume it leaves a value behind
        return 0, 1
    value = opcode.get_value()
    if value == Opcodes.Newobj:
        return msig.get_param_count(), 1
    if value == Opcodes.Calli:
        return msig.get_stack_pops() + 1, msig.get_stack_pushes()
    return msig.get_stack_pops(), msig.get_stack_pushes()


class MethodRecompiler:
    def __init__(self, instrs: list, exception_blocks: list = None, local_var_sig_tok: int = 0,
                 init_locals: bool = False):
        """ Serializes an instruction list back into a method body.

        Args:
            instrs (list): net_cil_disas.Instruction objects, branch arguments pointing at other entries of the list.
            exception_blocks (list): Clauses of the original body, offsets relative to the original instruction offsets.
            local_var_sig_tok (int): StandAloneSig token of the locals, 0 for none.
            init_locals (bool): Whether the CorILMethod_InitLocals flag is set.
        """
        self.__localvarsigtok = local_var_sig_tok
        self.__init_locals = init_locals
        self.__instrs = instrs
        self.__original_offsets = [instr.get_instr_offset() for instr in instrs]
        original_end = -1
        if len(instrs) > 0 and instrs[-1].get_instr_offset() >= 0:
            original_end = instrs[-1].get_instr_offset() + len(instrs[-1])
        self.__original_end = original_end
        self.__raw_exception_blocks = list(exception_blocks) if exception_blocks else list()
        self.__exception_blocks = list()
        self.__code_size = 0
        self.__layout_instrs()
        self.__remap_exception_blocks()

    def __assign_offsets(self):
        offset = 0
        for index, instr in enumerate(self.__instrs):
            instr.set_instr_offset(offset)
            instr.set_instr_index(index)
            offset += len(instr)
        self.__code_size = offset

    def __layout_instrs(self):
        """ Assign offsets, widening short branches until every displacement fits. """
        while True:
            self.__assign_offsets()
            widened = False
            for instr in self.__instrs:
                if not instr.get_opcode().is_short_branch():
                    continue
                displacement = instr.get_argument().get_instr_offset() - (instr.get_instr_offset() + len(instr))
                if not -128 <= displacement <= 127:
                    instr.set_opcode(net_opcodes.get_long_form(instr.get_opcode()))
                    widened = True
            if not widened:
                return

    def __remap_offset(self, offsets_map, old_offset):
        if old_offset == self.__original_end:
            return self.__code_size
        return offsets_map.get(old_offset)

    def __remap_exception_blocks(self):
        offsets_map = dict()
        for old_offset, instr in zip(self.__original_offsets, self.__instrs):
            if old_offset >= 0:
                offsets_map[old_offset] = instr.get_instr_offset()
        for clause in self.__raw_exception_blocks:
            clause_flags, try_offset, try_length, handler_offset, handler_length, token = clause
            new_try = self.__remap_offset(offsets_map, try_offset)
            new_try_end = self.__remap_offset(offsets_map, try_offset + try_length)
            new_handler = self.__remap_offset(offsets_map, handler_offset)
            new_handler_end = self.__remap_offset(offsets_map, handler_offset + handler_length)
            new_token = token
            if clause_flags == net_structs.CorILExceptionClause.Filter:
                new_token = self.__remap_offset(offsets_map, token)
            if None in (new_try, new_try_end, new_handler, new_handler_end, new_token):
                print('dropping exception clause {} that does not match the new code'.format(clause))
                continue
            self.__exception_blocks.append((clause_flags, new_try, new_try_end - new_try, new_handler,
                                            new_handler_end - new_handler, new_token))

    def get_exception_blocks(self):
        return list(self.__exception_blocks)

    def get_code_size(self):
        return self.__code_size

    def calculate_max_stack_size(self):
        """ Walk every path through the method and return the deepest evaluation stack seen. """
        count = len(self.__instrs)
        if count == 0:
            return 0
        index_of = {id(instr): x for x, instr in enumerate(self.__instrs)}
        offset_index = {instr.get_instr_offset(): x for x, instr in enumerate(self.__instrs)}
        depths = [None] * count
        work = [(0, 0)]
        for clause_flags, try_offset, try_length, handler_offset, handler_length, token in self.__exception_blocks:
            handler_depth = 1
            if clause_flags in (net_structs.CorILExceptionClause.Finally, net_structs.CorILExceptionClause.Fault):
                handler_depth = 0
            if handler_offset in offset_index:
                work.append((offset_index[handler_offset], handler_depth))
            if clause_flags == net_structs.CorILExceptionClause.Filter and token in offset_index:
                work.append((offset_index[token], 1))
        max_depth = 0
        seed = 0
        while True:
            while work:
                x, depth = work.pop()
                while x < count and depths[x] is None:
                    depths[x] = depth
                    instr = self.__instrs[x]
                    pops, pushes = get_stack_behaviour(instr)
                    depth = max(depth - pops, 0) + pushes
                    max_depth = max(max_depth, depth)
                    opcode = instr.get_opcode()
                    if opcode.get_value() in (Opcodes.Leave, Opcodes.Leave_S):
                        depth = 0
                    for target in instr.get_branch_targets():
                        work.append((index_of[id(target)], depth))
                    if opcode.ends_block():
                        break
                    x += 1
            #unreachable code (e.g. handlers whose clauses were lost) still has to verify
            while seed < count and depths[seed] is not None:
                seed += 1
            if seed >= count:
                break
            work.append((seed, 1))
        return max_depth

    def compile_method(self):
        use_fat = False
        if self.__code_size > 63:
            use_fat = True
        if self.__localvarsigtok != 0:
            use_fat = True
        if len(self.__exception_blocks) != 0:
            use_fat = True
        if self.__init_locals:
            use_fat = True

        calculated_max_stack = self.calculate_max_stack_size()
        if calculated_max_stack > 8:
            use_fat = True
        if calculated_max_stack > 0xFFFF:
            raise net_exceptions.MethodTooLargeException()
        result = bytearray()
        if not use_fat:
            result.extend(int.to_bytes((self.__code_size << 2) | net_structs.CorILMethod.TinyFormat, 1, 'little'))
            for instr in self.__instrs:
                result.extend(instr.to_bytes())
            return bytes(result)

        flags = net_structs.CorILMethod.FatFormat
        if len(self.__exception_blocks) != 0:
            flags |= net_structs.CorILMethod.MoreSects
        if self.__init_locals:
            flags |= net_structs.CorILMethod.InitLocals
        flags |= (3 << 12)
        result.extend(int.to_bytes(flags, 2, 'little'))
        result.extend(int.to_bytes(calculated_max_stack, 2, 'little'))
        result.extend(int.to_bytes(self.__code_size, 4, 'little'))
        result.extend(int.to_bytes(self.__localvarsigtok, 4, 'little'))

        for instr in self.__instrs:
            result.extend(instr.to_bytes())

        if len(self.__exception_blocks) == 0:
            return bytes(result)

        while len(result) % 4 != 0:
            result.append(0)

        use_fat_exceptions = False
        if len(self.__exception_blocks) > 20:
            use_fat_exceptions = True

        if not use_fat_exceptions:
            for clause_flags, try_offset, try_length, handler_offset, handler_length, token in self.__exception_blocks:
                if not (calc_int_size(clause_flags) <= 2 and calc_int_size(try_offset) <= 2 and
                        calc_int_size(try_length) <= 1 and calc_int_size(handler_offset) <= 2 and
                        calc_int_size(handler_length) <= 1):
                    use_fat_exceptions = True
                    break

        if not use_fat_exceptions:
            result.append(net_structs.CorILMethod.Sect_EHTable)
            data_size = (len(self.__exception_blocks) * 12) + 4
            result.extend(int.to_bytes(data_size, 1, 'little'))
            result.append(0)
            result.append(0)
            for clause_flags, try_offset, try_length, handler_offset, handler_length, token in self.__exception_blocks:
                result.extend(int.to_bytes(clause_flags, 2, 'little'))
                result.extend(int.to_bytes(try_offset, 2, 'little'))
                result.extend(int.to_bytes(try_length, 1, 'little'))
                result.extend(int.to_bytes(handler_offset, 2, 'little'))
                result.extend(int.to_bytes(handler_length, 1, 'little'))
                result.extend(int.to_bytes(token, 4, 'little'))
        else:
            result.append(net_structs.CorILMethod.Sect_FatFormat | net_structs.CorILMethod.Sect_EHTable)
            data_size = (len(self.__exception_blocks) * 24) + 4
            result.extend(int.to_bytes(data_size, 3, 'little'))
            for clause_flags, try_offset, try_length, handler_offset, handler_length, token in self.__exception_blocks:
                result.extend(int.to_bytes(clause_flags, 4, 'little'))
                result.extend(int.to_bytes(try_offset, 4, 'little'))
                result.extend(int.to_bytes(try_length, 4, 'little'))
                result.extend(int.to_bytes(handler_offset, 4, 'little'))
                result.extend(int.to_bytes(handler_length, 4, 'little'))
                result.extend(int.to_bytes(token, 4, 'little'))
        return bytes(result)
