"""
CHIP-8 Core Test Suite
=======================
Covers decode, every executed instruction family, draw/collision, the
timer unit, faults and unknown-opcode handling.
"""

import contextlib
import io
import random
import unittest

from chip8 import (Chip8, Instruction, decode, LoadError, FaultError,
                   StackOverflow, StackUnderflow, MemoryFault,
                   MAX_ROM_SIZE, PROGRAM_START, SCREEN_W, SCREEN_H, VF)
from asm import assemble


# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def make_cpu(source: str = "", seed: int = 0) -> Chip8:
    cpu = Chip8(rng=random.Random(seed))
    cpu.on_unknown = lambda pc, op: None
    if source:
        cpu.load_program(assemble(source))
    return cpu


def run_asm(source: str, max_steps: int = 10_000, seed: int = 0) -> Chip8:
    """Assemble, load at 0x200, run until the program spins on 'jp self'."""
    cpu = make_cpu(source, seed)
    cpu.run(max_steps)
    return cpu


def exec_word(cpu: Chip8, word: int):
    cpu.execute(decode(word))


# =========================================================================
#  Decode
# =========================================================================

class TestDecode(unittest.TestCase):
    def test_fields(self):
        ins = decode(0xD12F)
        self.assertIsInstance(ins, Instruction)
        self.assertEqual(ins.op, "DRW")
        self.assertEqual((ins.x, ins.y, ins.n), (1, 2, 0xF))
        self.assertEqual(ins.nn, 0x2F)
        self.assertEqual(ins.nnn, 0x12F)
        self.assertEqual(ins.opcode, 0xD12F)

    def test_families(self):
        cases = {
            0x00E0: "CLS", 0x00EE: "RET", 0x1ABC: "JP", 0x2ABC: "CALL",
            0x3A12: "SE", 0x4A12: "SNE", 0x6A12: "LD", 0x7A12: "ADD",
            0x8AB0: "MOV", 0x8AB1: "OR", 0x8AB2: "AND", 0x8AB3: "XOR",
            0x8AB4: "ADDC", 0x8AB5: "SUB", 0xA123: "LDI", 0xCA0F: "RND",
            0xE39E: "SKP", 0xE3A1: "SKNP", 0xF307: "LDDT",
            0xF315: "SETDT", 0xF318: "SETST",
        }
        for word, op in cases.items():
            with self.subTest(word=hex(word)):
                self.assertEqual(decode(word).op, op)

    def test_unrecognized(self):
        for word in (0x0000, 0x0123, 0x00E1, 0x5120, 0x9120, 0xB123,
                     0x8126, 0x8127, 0x812E, 0xE19F, 0xF10A, 0xF11E,
                     0xF129, 0xF133, 0xF155, 0xF165):
            with self.subTest(word=hex(word)):
                self.assertEqual(decode(word).op, "UNKNOWN")


# =========================================================================
#  Initial state / ROM load
# =========================================================================

class TestLoad(unittest.TestCase):
    def test_initial_state(self):
        cpu = Chip8()
        self.assertEqual(cpu.pc, PROGRAM_START)
        self.assertEqual(cpu.regs, [0] * 16)
        self.assertEqual(cpu.i_reg, 0)
        self.assertEqual(cpu.sp, 0)
        self.assertEqual((cpu.delay_timer, cpu.sound_timer), (0, 0))
        self.assertEqual(len(cpu.mem), 4096)
        self.assertEqual(len(cpu.gfx), SCREEN_W * SCREEN_H)
        self.assertTrue(cpu.draw_flag)
        self.assertEqual(cpu.keys, [False] * 16)

    def test_load_copies_at_0x200(self):
        cpu = Chip8()
        cpu.load_program(b"\x12\x34\xAB")
        self.assertEqual(cpu.mem[0x200:0x203], b"\x12\x34\xAB")
        self.assertEqual(cpu.mem[:0x200], bytes(0x200))
        self.assertEqual(cpu.mem[0x203:], bytes(4096 - 0x203))

    def test_load_max_size(self):
        cpu = Chip8()
        cpu.load_program(b"\xFF" * MAX_ROM_SIZE)
        self.assertEqual(MAX_ROM_SIZE, 3584)
        self.assertEqual(cpu.mem[0xFFF], 0xFF)

    def test_oversize_fails_without_writing(self):
        cpu = Chip8()
        cpu.load_program(b"\x11\x22")
        with self.assertRaises(LoadError):
            cpu.load_program(b"\xEE" * (MAX_ROM_SIZE + 1))
        self.assertEqual(cpu.mem[0x200:0x202], b"\x11\x22")
        self.assertEqual(cpu.mem[0x202:], bytes(4096 - 0x202))

    def test_reload_clears_previous_image(self):
        cpu = Chip8()
        cpu.load_program(b"\xAA" * 10)
        cpu.load_program(b"\xBB")
        self.assertEqual(cpu.mem[0x201:0x20A], bytes(9))

    def test_reset(self):
        cpu = run_asm("ld v1, 9\nld i, 0x300\ncall sub\nend: jp end\nsub: jp sub")
        cpu.reset()
        self.assertEqual(cpu.regs[1], 0)
        self.assertEqual(cpu.i_reg, 0)
        self.assertEqual(cpu.sp, 0)
        self.assertEqual(cpu.pc, PROGRAM_START)
        self.assertEqual(cpu.mem, bytearray(4096))


# =========================================================================
#  Display: 00E0 and DXYN
# =========================================================================

class TestClear(unittest.TestCase):
    def test_clear_after_any_content(self):
        cpu = make_cpu("cls")
        cpu.gfx = bytearray([1] * (SCREEN_W * SCREEN_H))
        cpu.draw_flag = False
        cpu.step()
        self.assertEqual(sum(cpu.gfx), 0)
        self.assertTrue(cpu.draw_flag)
        self.assertEqual(cpu.pc, 0x202)


class TestDraw(unittest.TestCase):
    def test_sprite_bits_msb_first(self):
        cpu = run_asm("""
            ld i, sprite
            ld v0, 10
            ld v1, 5
            drw v0, v1, 2
        end: jp end
        sprite:
            .db 0x80, 0x01
        """)
        self.assertEqual(cpu.pixel(10, 5), 1)
        self.assertEqual(cpu.pixel(11, 5), 0)
        self.assertEqual(cpu.pixel(17, 6), 1)
        self.assertEqual(sum(cpu.gfx), 2)
        self.assertEqual(cpu.vf, 0)

    def test_draw_twice_restores_and_collides(self):
        cpu = run_asm("""
            ld i, sprite
            ld v0, 3
            ld v1, 4
            drw v0, v1, 3
            ld v2, vf
            drw v0, v1, 3
        end: jp end
        sprite:
            .db 0xF0, 0x90, 0xF0
        """)
        self.assertEqual(cpu.regs[2], 0)
        self.assertEqual(cpu.vf, 1)
        self.assertEqual(sum(cpu.gfx), 0)

    def test_wraparound(self):
        cpu = make_cpu()
        cpu.mem[0x300:0x303] = b"\xFF\xFF\xFF"
        cpu.i_reg = 0x300
        cpu.draw(60, 30, 3)
        self.assertEqual(cpu.pixel(63, 30), 1)
        self.assertEqual(cpu.pixel(0, 30), 1)
        self.assertEqual(cpu.pixel(3, 31), 1)
        self.assertEqual(cpu.pixel(4, 31), 0)
        self.assertEqual(cpu.pixel(0, 0), 1)
        self.assertEqual(sum(cpu.gfx), 24)

    def test_flag_reset_and_dirty_on_empty_sprite(self):
        cpu = make_cpu()
        cpu.regs[VF] = 1
        cpu.draw_flag = False
        cpu.i_reg = 0x300
        cpu.draw(0, 0, 4)          # four zero bytes
        self.assertEqual(cpu.vf, 0)
        self.assertTrue(cpu.draw_flag)
        cpu.draw_flag = False
        cpu.draw(0, 0, 0)
        self.assertTrue(cpu.draw_flag)

    def test_partial_overlap_sets_flag(self):
        cpu = make_cpu()
        cpu.mem[0x300] = 0x80
        cpu.mem[0x301] = 0xC0
        cpu.i_reg = 0x300
        cpu.draw(0, 0, 1)
        cpu.i_reg = 0x301
        cpu.draw(0, 0, 1)
        self.assertEqual(cpu.vf, 1)
        self.assertEqual(cpu.pixel(0, 0), 0)
        self.assertEqual(cpu.pixel(1, 0), 1)

    def test_sprite_past_memory_end_faults(self):
        cpu = make_cpu("""
            ld i, 0xffe
            ld vf, 7
            drw v0, v0, 3
        """)
        cpu.step()
        cpu.step()
        cpu.draw_flag = False
        with self.assertRaises(MemoryFault) as ctx:
            cpu.step()
        self.assertEqual(ctx.exception.address, 0xFFE)
        self.assertEqual(cpu.vf, 7)
        self.assertEqual(cpu.pc, 0x204)
        self.assertFalse(cpu.draw_flag)
        self.assertEqual(sum(cpu.gfx), 0)

    def test_sprite_ending_at_last_byte_is_fine(self):
        cpu = make_cpu()
        cpu.mem[0xFFF] = 0x80
        cpu.i_reg = 0xFFF
        cpu.draw(0, 0, 1)
        self.assertEqual(cpu.pixel(0, 0), 1)

    def test_consume_frame_clears_dirty(self):
        cpu = make_cpu()
        cpu.gfx[SCREEN_W + 2] = 1
        rows = cpu.consume_frame()
        self.assertEqual(len(rows), SCREEN_H)
        self.assertEqual(len(rows[0]), SCREEN_W)
        self.assertEqual(rows[1][2], 1)
        self.assertFalse(cpu.draw_flag)


# =========================================================================
#  Registers and ALU
# =========================================================================

class TestRegisters(unittest.TestCase):
    def test_set_then_add_wraps_without_flag(self):
        cpu = run_asm("""
            ld vf, 0x55
            ld v3, 0xff
            add v3, 2
        end: jp end
        """)
        self.assertEqual(cpu.regs[3], 0x01)
        self.assertEqual(cpu.vf, 0x55)

    def test_ld_i(self):
        cpu = run_asm("ld i, 0xabc\nend: jp end")
        self.assertEqual(cpu.i_reg, 0xABC)

    def test_i_reg_masked_to_12_bits(self):
        cpu = make_cpu()
        cpu.i_reg = 0x1234
        self.assertEqual(cpu.i_reg, 0x234)


class TestALU(unittest.TestCase):
    def alu(self, vx: int, vy: int, word: int) -> Chip8:
        cpu = make_cpu()
        cpu.regs[1] = vx
        cpu.regs[2] = vy
        exec_word(cpu, word)
        self.assertEqual(cpu.pc, 0x202)
        return cpu

    def test_mov(self):
        self.assertEqual(self.alu(1, 0x7E, 0x8120).regs[1], 0x7E)

    def test_or_and_xor(self):
        self.assertEqual(self.alu(0xF0, 0x0F, 0x8121).regs[1], 0xFF)
        self.assertEqual(self.alu(0xF3, 0x3F, 0x8122).regs[1], 0x33)
        self.assertEqual(self.alu(0xFF, 0x0F, 0x8123).regs[1], 0xF0)

    def test_add_with_carry(self):
        cpu = self.alu(200, 100, 0x8124)
        self.assertEqual(cpu.regs[1], 44)
        self.assertEqual(cpu.vf, 1)

    def test_add_without_carry(self):
        cpu = self.alu(100, 155, 0x8124)
        self.assertEqual(cpu.regs[1], 255)
        self.assertEqual(cpu.vf, 0)

    def test_sub_with_borrow(self):
        cpu = self.alu(10, 20, 0x8125)
        self.assertEqual(cpu.regs[1], 246)
        self.assertEqual(cpu.vf, 0)

    def test_sub_no_borrow_when_equal(self):
        cpu = self.alu(20, 20, 0x8125)
        self.assertEqual(cpu.regs[1], 0)
        self.assertEqual(cpu.vf, 1)

    def test_flag_register_as_destination(self):
        # the flag is written after the result
        cpu = make_cpu()
        cpu.regs[VF] = 200
        cpu.regs[1] = 100
        exec_word(cpu, 0x8F14)
        self.assertEqual(cpu.vf, 1)
        cpu.regs[VF] = 10
        cpu.regs[1] = 20
        exec_word(cpu, 0x8F15)
        self.assertEqual(cpu.vf, 0)

    def test_flag_register_as_source(self):
        cpu = make_cpu()
        cpu.regs[1] = 10
        cpu.regs[VF] = 20
        exec_word(cpu, 0x81F5)
        self.assertEqual(cpu.regs[1], 246)
        self.assertEqual(cpu.vf, 0)

    def test_logic_leaves_flag(self):
        cpu = make_cpu()
        cpu.regs[VF] = 0x42
        exec_word(cpu, 0x8121)
        self.assertEqual(cpu.vf, 0x42)


class TestRandom(unittest.TestCase):
    def test_rnd_masks_with_seeded_rng(self):
        cpu = make_cpu("rnd v4, 0x0f", seed=7)
        cpu.step()
        expected = random.Random(7).randrange(256) & 0x0F
        self.assertEqual(cpu.regs[4], expected)
        self.assertEqual(cpu.pc, 0x202)

    def test_rnd_zero_mask(self):
        cpu = make_cpu("rnd v4, 0")
        cpu.regs[4] = 0x99
        cpu.step()
        self.assertEqual(cpu.regs[4], 0)


# =========================================================================
#  Control flow
# =========================================================================

class TestControlFlow(unittest.TestCase):
    def test_jump(self):
        cpu = make_cpu("jp 0x346")
        cpu.step()
        self.assertEqual(cpu.pc, 0x346)

    def test_call_and_return(self):
        cpu = make_cpu("""
            call sub
        end: jp end
        sub: ret
        """)
        cpu.step()
        self.assertEqual(cpu.pc, 0x204)
        self.assertEqual(cpu.sp, 1)
        self.assertEqual(cpu.stack[0], 0x200)
        cpu.step()
        self.assertEqual(cpu.pc, 0x202)
        self.assertEqual(cpu.sp, 0)

    def test_sixteen_nested_calls_round_trip(self):
        lines = ["call f0", "end: jp end"]
        for i in range(16):
            lines.append(f"f{i}:")
            lines.append(f"call f{i + 1}" if i < 15 else "ld v0, 1")
            lines.append("ret")
        cpu = run_asm("\n".join(lines))
        self.assertEqual(cpu.regs[0], 1)
        self.assertEqual(cpu.pc, 0x202)
        self.assertEqual(cpu.sp, 0)
        self.assertEqual(cpu.step_count, 33)

    def test_seventeenth_call_overflows(self):
        cpu = make_cpu("start: call start")
        for _ in range(16):
            cpu.step()
        self.assertEqual(cpu.sp, 16)
        with self.assertRaises(StackOverflow) as ctx:
            cpu.step()
        self.assertIsInstance(ctx.exception, FaultError)
        self.assertEqual(ctx.exception.pc, 0x200)
        self.assertEqual(cpu.sp, 16)
        self.assertEqual(cpu.pc, 0x200)

    def test_return_on_empty_stack_underflows(self):
        cpu = make_cpu("ret")
        with self.assertRaises(StackUnderflow):
            cpu.step()
        self.assertEqual(cpu.sp, 0)
        self.assertEqual(cpu.pc, 0x200)

    def test_skip_equal(self):
        cpu = run_asm("""
            ld v1, 5
            se v1, 5
            ld v2, 1
            ld v3, 1
            se v1, 6
            ld v4, 1
        end: jp end
        """)
        self.assertEqual(cpu.regs[2], 0)
        self.assertEqual(cpu.regs[3], 1)
        self.assertEqual(cpu.regs[4], 1)

    def test_skip_not_equal(self):
        cpu = run_asm("""
            ld v1, 5
            sne v1, 6
            ld v2, 1
            sne v1, 5
            ld v3, 1
        end: jp end
        """)
        self.assertEqual(cpu.regs[2], 0)
        self.assertEqual(cpu.regs[3], 1)

    def test_fetch_past_memory_end_faults(self):
        cpu = make_cpu()
        cpu.pc = 0xFFF
        with self.assertRaises(MemoryFault):
            cpu.step()
        self.assertEqual(cpu.pc, 0xFFF)

    def test_run_stops_on_spin(self):
        cpu = make_cpu("ld v0, 1\nend: jp end")
        self.assertEqual(cpu.run(100), 1)
        self.assertTrue(cpu.spinning)


# =========================================================================
#  Keys
# =========================================================================

class TestKeys(unittest.TestCase):
    SRC = """
        ld v1, 5
        skp v1
        ld v2, 1
        sknp v1
        ld v3, 1
    end: jp end
    """

    def test_key_pressed(self):
        cpu = make_cpu(self.SRC)
        cpu.keys[5] = True
        cpu.run(100)
        self.assertEqual(cpu.regs[2], 0)
        self.assertEqual(cpu.regs[3], 1)

    def test_key_released(self):
        cpu = make_cpu(self.SRC)
        cpu.run(100)
        self.assertEqual(cpu.regs[2], 1)
        self.assertEqual(cpu.regs[3], 0)

    def test_key_index_uses_low_nibble(self):
        cpu = make_cpu("skp v1")
        cpu.regs[1] = 0x1A
        cpu.keys[0xA] = True
        cpu.step()
        self.assertEqual(cpu.pc, 0x204)


# =========================================================================
#  Timers
# =========================================================================

class TestTimers(unittest.TestCase):
    def test_tick_decrements_to_zero_and_stops(self):
        cpu = make_cpu()
        cpu.delay_timer = 2
        cpu.sound_timer = 1
        cpu.tick()
        self.assertEqual((cpu.delay_timer, cpu.sound_timer), (1, 0))
        cpu.tick()
        cpu.tick()
        self.assertEqual((cpu.delay_timer, cpu.sound_timer), (0, 0))

    def test_steps_do_not_decay_timers(self):
        cpu = make_cpu("""
            ld v1, 5
            ld dt, v1
        loop:
            add v2, 1
            jp loop
        """)
        cpu.step()
        cpu.step()
        self.assertEqual(cpu.delay_timer, 5)
        for _ in range(5):
            for _ in range(7):
                cpu.step()
            self.assertGreater(cpu.delay_timer, 0)
            cpu.tick()
        self.assertEqual(cpu.delay_timer, 0)

    def test_read_delay_after_three_ticks(self):
        cpu = make_cpu()
        cpu.delay_timer = 5
        for _ in range(3):
            cpu.tick()
        exec_word(cpu, 0xF307)
        self.assertEqual(cpu.regs[3], 2)

    def test_set_sound_timer(self):
        cpu = run_asm("ld v6, 3\nld st, v6\nend: jp end")
        self.assertEqual(cpu.sound_timer, 3)
        self.assertTrue(cpu.sound_active)
        for _ in range(3):
            cpu.tick()
        self.assertFalse(cpu.sound_active)


# =========================================================================
#  Unknown opcodes
# =========================================================================

class TestUnknownOpcode(unittest.TestCase):
    WORDS = (0x0123, 0x5120, 0x9120, 0xB123, 0x8126, 0xE1FF, 0xF10A, 0xF155)

    def test_no_state_change_besides_pc(self):
        for word in self.WORDS:
            with self.subTest(word=hex(word)):
                seen = []
                cpu = make_cpu("call sub\nsub: ld v0, 0")
                cpu.on_unknown = lambda pc, op: seen.append((pc, op))
                cpu.step()
                cpu.regs = list(range(16))
                cpu.i_reg = 0x321
                cpu.mem[0x202] = word >> 8
                cpu.mem[0x203] = word & 0xFF
                regs = list(cpu.regs)
                mem = bytes(cpu.mem)
                gfx = bytes(cpu.gfx)
                cpu.step()
                self.assertEqual(cpu.pc, 0x204)
                self.assertEqual(cpu.regs, regs)
                self.assertEqual(cpu.sp, 1)
                self.assertEqual(cpu.i_reg, 0x321)
                self.assertEqual(bytes(cpu.mem), mem)
                self.assertEqual(bytes(cpu.gfx), gfx)
                self.assertEqual(seen, [(0x202, word)])
                self.assertEqual(cpu.unknown_count, 1)

    def test_default_diagnostic_goes_to_stderr(self):
        cpu = Chip8()
        cpu.load_program(b"\x51\x20")
        err = io.StringIO()
        with contextlib.redirect_stderr(err):
            cpu.step()
        self.assertIn("0x5120", err.getvalue())
        self.assertEqual(cpu.pc, 0x202)


class TestDumpRegs(unittest.TestCase):
    def test_dump_mentions_every_register(self):
        text = make_cpu().dump_regs()
        for i in range(16):
            self.assertIn(f"V{i:X} =", text)
        self.assertIn("PC = 0x200", text)


if __name__ == "__main__":
    unittest.main()
