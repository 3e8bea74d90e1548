"""
CHIP-8 Virtual Machine Core
============================
A step-at-a-time interpreter for the classic CHIP-8 instruction set.

Every instruction is fetched as two bytes from memory (big-endian), decoded
into a tagged ``Instruction`` and then executed through a handler table.
Decode and execute are separate so either can be exercised on its own:

    instr = decode(0x8124)      # Instruction(op='ADDC', x=1, y=2, ...)
    cpu.execute(instr)

The machine owns nothing outside this object: memory, registers, stack,
timers, framebuffer and the key latch all live on ``Chip8``.  Windowing,
keyboard polling, file loading and frame pacing belong to the driver
(see system.py / display.py).
"""

from __future__ import annotations
import random
import sys
from typing import Callable, NamedTuple, Optional

# ---------------------------------------------------------------------------
#  Constants
# ---------------------------------------------------------------------------

MEM_SIZE      = 4096
PROGRAM_START = 0x200
MAX_ROM_SIZE  = MEM_SIZE - PROGRAM_START   # 3584 bytes
ADDR_MASK     = 0xFFF

NUM_REGS      = 16
STACK_DEPTH   = 16
NUM_KEYS      = 16

SCREEN_W      = 64
SCREEN_H      = 32

VF            = 0xF   # flag register index

# ---------------------------------------------------------------------------
#  Helpers
# ---------------------------------------------------------------------------

def u8(v: int) -> int:
    """Mask to unsigned 8 bits."""
    return v & 0xFF

def u12(v: int) -> int:
    """Mask to a 12-bit address."""
    return v & ADDR_MASK

# ---------------------------------------------------------------------------
#  Errors
# ---------------------------------------------------------------------------

class Chip8Error(Exception):
    """Base for all machine-generated errors."""
    pass

class LoadError(Chip8Error):
    pass

class FaultError(Chip8Error):
    """A fault raised from step().  State is left as it was before the
    faulting instruction."""

    kind = "fault"

    def __init__(self, pc: int, message: str = "", address: Optional[int] = None):
        self.pc = pc
        self.address = address
        super().__init__(message or f"{self.kind} @ pc={pc:#05x}")

class StackOverflow(FaultError):
    kind = "stack overflow"

class StackUnderflow(FaultError):
    kind = "stack underflow"

class MemoryFault(FaultError):
    kind = "memory fault"

# ---------------------------------------------------------------------------
#  Decode
# ---------------------------------------------------------------------------

class Instruction(NamedTuple):
    op: str
    opcode: int
    x: int
    y: int
    n: int
    nn: int
    nnn: int

# 8XY_ low nibble → op
ALU_OPS = {
    0x0: "MOV", 0x1: "OR", 0x2: "AND", 0x3: "XOR",
    0x4: "ADDC", 0x5: "SUB",
}

# EX__ / FX__ low byte → op
KEY_OPS = {0x9E: "SKP", 0xA1: "SKNP"}
MISC_OPS = {0x07: "LDDT", 0x15: "SETDT", 0x18: "SETST"}

# high nibble → op, for families that need no sub-decode
FAMILY_OPS = {
    0x1: "JP", 0x2: "CALL", 0x3: "SE", 0x4: "SNE",
    0x6: "LD", 0x7: "ADD", 0xA: "LDI", 0xC: "RND", 0xD: "DRW",
}


def decode(opcode: int) -> Instruction:
    """Split a 16-bit word into its fields and classify it."""
    opcode &= 0xFFFF
    f   = (opcode >> 12) & 0xF
    x   = (opcode >> 8) & 0xF
    y   = (opcode >> 4) & 0xF
    n   = opcode & 0xF
    nn  = opcode & 0xFF
    nnn = opcode & 0xFFF

    if opcode == 0x00E0:
        op = "CLS"
    elif opcode == 0x00EE:
        op = "RET"
    elif f in FAMILY_OPS:
        op = FAMILY_OPS[f]
    elif f == 0x8:
        op = ALU_OPS.get(n, "UNKNOWN")
    elif f == 0xE:
        op = KEY_OPS.get(nn, "UNKNOWN")
    elif f == 0xF:
        op = MISC_OPS.get(nn, "UNKNOWN")
    else:
        op = "UNKNOWN"
    return Instruction(op, opcode, x, y, n, nn, nnn)

# ---------------------------------------------------------------------------
#  Machine
# ---------------------------------------------------------------------------

class Chip8:
    """CHIP-8 machine state plus the fetch/decode/execute engine."""

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng if rng is not None else random.Random()

        # Callbacks
        self.on_unknown: Optional[Callable[[int, int], None]] = None  # (pc, opcode)

        self.unknown_count: int = 0
        self._handlers = {
            "CLS":   self._op_cls,
            "RET":   self._op_ret,
            "JP":    self._op_jp,
            "CALL":  self._op_call,
            "SE":    self._op_se,
            "SNE":   self._op_sne,
            "LD":    self._op_ld,
            "ADD":   self._op_add,
            "MOV":   self._op_alu,
            "OR":    self._op_alu,
            "AND":   self._op_alu,
            "XOR":   self._op_alu,
            "ADDC":  self._op_alu,
            "SUB":   self._op_alu,
            "LDI":   self._op_ldi,
            "RND":   self._op_rnd,
            "DRW":   self._op_drw,
            "SKP":   self._op_skp,
            "SKNP":  self._op_sknp,
            "LDDT":  self._op_lddt,
            "SETDT": self._op_setdt,
            "SETST": self._op_setst,
            "UNKNOWN": self._op_unknown,
        }
        self.reset()

    def reset(self):
        """Zero every field and point pc at the program region."""
        self.mem = bytearray(MEM_SIZE)
        self.regs: list[int] = [0] * NUM_REGS
        self._i: int = 0
        self.pc: int = PROGRAM_START
        self.stack: list[int] = [0] * STACK_DEPTH
        self.sp: int = 0
        self.delay_timer: int = 0
        self.sound_timer: int = 0
        self.gfx = bytearray(SCREEN_W * SCREEN_H)
        self.draw_flag: bool = True   # force the first frame out
        self.keys: list[bool] = [False] * NUM_KEYS
        self.step_count: int = 0

    # -- Property shortcuts --

    @property
    def i_reg(self) -> int:
        return self._i

    @i_reg.setter
    def i_reg(self, value: int):
        self._i = u12(value)

    @property
    def vf(self) -> int:
        return self.regs[VF]

    @property
    def sound_active(self) -> bool:
        return self.sound_timer > 0

    # -- Loading --

    def load_program(self, data: bytes | bytearray):
        """Copy a ROM image to 0x200.  Memory is cleared first."""
        if len(data) > MAX_ROM_SIZE:
            raise LoadError(f"ROM is too big: {len(data)} bytes "
                            f"(max {MAX_ROM_SIZE})")
        self.mem = bytearray(MEM_SIZE)
        self.mem[PROGRAM_START:PROGRAM_START + len(data)] = data

    # -- Memory access --

    def _check_addr(self, addr: int, size: int = 1):
        if addr < 0 or addr + size > MEM_SIZE:
            raise MemoryFault(self.pc,
                              f"Memory fault @ {addr:#06x} (+{size}) "
                              f"pc={self.pc:#05x}",
                              address=addr)

    def mem_read8(self, addr: int) -> int:
        self._check_addr(addr)
        return self.mem[addr]

    def mem_write8(self, addr: int, val: int):
        self._check_addr(addr)
        self.mem[addr] = u8(val)

    def mem_read16(self, addr: int) -> int:
        """Big-endian word read."""
        self._check_addr(addr, 2)
        return (self.mem[addr] << 8) | self.mem[addr + 1]

    # -- Fetch --

    def fetch(self) -> int:
        """Return the instruction word at pc (pc is not advanced)."""
        return self.mem_read16(self.pc)

    @property
    def spinning(self) -> bool:
        """True when the next instruction is a jump to itself."""
        if self.pc + 2 > MEM_SIZE:
            return False
        word = (self.mem[self.pc] << 8) | self.mem[self.pc + 1]
        return (word & 0xF000) == 0x1000 and (word & 0xFFF) == self.pc

    # -- Display --

    def pixel(self, x: int, y: int) -> int:
        return self.gfx[(y % SCREEN_H) * SCREEN_W + (x % SCREEN_W)]

    def frame(self) -> list[list[int]]:
        """The framebuffer as 32 rows of 64 cells."""
        return [list(self.gfx[y * SCREEN_W:(y + 1) * SCREEN_W])
                for y in range(SCREEN_H)]

    def consume_frame(self) -> list[list[int]]:
        """Hand the current frame to the renderer and clear the dirty flag."""
        rows = self.frame()
        self.draw_flag = False
        return rows

    def clear_screen(self):
        self.gfx = bytearray(SCREEN_W * SCREEN_H)
        self.draw_flag = True

    def draw(self, x0: int, y0: int, height: int):
        """XOR a sprite of *height* rows from memory[I] at (x0, y0).

        VF is set to 1 if any lit cell is turned off.  Coordinates wrap;
        sprite bytes past the end of memory fault before anything changes.
        """
        self._check_addr(self._i, height)
        self.regs[VF] = 0
        gfx = self.gfx
        for r in range(height):
            row = self.mem[self._i + r]
            if not row:
                continue
            y = (y0 + r) % SCREEN_H
            for c in range(8):
                if row & (0x80 >> c):
                    idx = y * SCREEN_W + (x0 + c) % SCREEN_W
                    if gfx[idx]:
                        self.regs[VF] = 1
                    gfx[idx] ^= 1
        self.draw_flag = True

    # -- Timers --

    def tick(self):
        """Decrement both timers toward zero.  Call at 60 Hz."""
        if self.delay_timer > 0:
            self.delay_timer -= 1
        if self.sound_timer > 0:
            self.sound_timer -= 1

    # =====================================================================
    #  STEP: fetch / decode / execute
    # =====================================================================

    def step(self):
        """Execute one instruction."""
        self.execute(decode(self.fetch()))

    def execute(self, instr: Instruction):
        self._handlers[instr.op](instr)
        self.step_count += 1

    def run(self, max_steps: int = 1_000_000) -> int:
        """Step until a jump-to-self spin or max_steps.  Returns steps run."""
        for n in range(max_steps):
            if self.spinning:
                return n
            self.step()
        return max_steps

    # =====================================================================
    #  Handlers
    # =====================================================================

    def _skip_if(self, cond: bool):
        self.pc = u12(self.pc + (4 if cond else 2))

    def _advance(self):
        self.pc = u12(self.pc + 2)

    # -- 0x0 --
    def _op_cls(self, ins: Instruction):
        self.clear_screen()
        self._advance()

    def _op_ret(self, ins: Instruction):
        if self.sp == 0:
            raise StackUnderflow(self.pc, f"Return with empty stack "
                                          f"@ pc={self.pc:#05x}")
        self.sp -= 1
        self.pc = u12(self.stack[self.sp] + 2)

    # -- 0x1 / 0x2 --
    def _op_jp(self, ins: Instruction):
        self.pc = ins.nnn

    def _op_call(self, ins: Instruction):
        if self.sp >= STACK_DEPTH:
            raise StackOverflow(self.pc, f"Call depth exceeds {STACK_DEPTH} "
                                         f"@ pc={self.pc:#05x}")
        self.stack[self.sp] = self.pc
        self.sp += 1
        self.pc = ins.nnn

    # -- 0x3 / 0x4 --
    def _op_se(self, ins: Instruction):
        self._skip_if(self.regs[ins.x] == ins.nn)

    def _op_sne(self, ins: Instruction):
        self._skip_if(self.regs[ins.x] != ins.nn)

    # -- 0x6 / 0x7 --
    def _op_ld(self, ins: Instruction):
        self.regs[ins.x] = ins.nn
        self._advance()

    def _op_add(self, ins: Instruction):
        # no carry flag for 7XNN
        self.regs[ins.x] = u8(self.regs[ins.x] + ins.nn)
        self._advance()

    # -- 0x8: register ALU --
    def _op_alu(self, ins: Instruction):
        vx = self.regs[ins.x]
        vy = self.regs[ins.y]
        op = ins.op
        if op == "MOV":
            self.regs[ins.x] = vy
        elif op == "OR":
            self.regs[ins.x] = vx | vy
        elif op == "AND":
            self.regs[ins.x] = vx & vy
        elif op == "XOR":
            self.regs[ins.x] = vx ^ vy
        elif op == "ADDC":
            total = vx + vy
            self.regs[ins.x] = u8(total)
            self.regs[VF] = 1 if total > 0xFF else 0
        elif op == "SUB":
            self.regs[ins.x] = u8(vx - vy)
            # VF=1 means no borrow
            self.regs[VF] = 1 if vx >= vy else 0
        self._advance()

    # -- 0xA / 0xC / 0xD --
    def _op_ldi(self, ins: Instruction):
        self.i_reg = ins.nnn
        self._advance()

    def _op_rnd(self, ins: Instruction):
        self.regs[ins.x] = self.rng.randrange(256) & ins.nn
        self._advance()

    def _op_drw(self, ins: Instruction):
        self.draw(self.regs[ins.x], self.regs[ins.y], ins.n)
        self._advance()

    # -- 0xE: keys --
    def _op_skp(self, ins: Instruction):
        self._skip_if(self.keys[self.regs[ins.x] & 0xF])

    def _op_sknp(self, ins: Instruction):
        self._skip_if(not self.keys[self.regs[ins.x] & 0xF])

    # -- 0xF: timers --
    def _op_lddt(self, ins: Instruction):
        self.regs[ins.x] = self.delay_timer
        self._advance()

    def _op_setdt(self, ins: Instruction):
        self.delay_timer = self.regs[ins.x]
        self._advance()

    def _op_setst(self, ins: Instruction):
        self.sound_timer = self.regs[ins.x]
        self._advance()

    # -- anything else --
    def _op_unknown(self, ins: Instruction):
        self.unknown_count += 1
        if self.on_unknown:
            self.on_unknown(self.pc, ins.opcode)
        else:
            print(f"[chip8] unknown opcode {ins.opcode:#06x} "
                  f"@ pc={self.pc:#05x}", file=sys.stderr)
        self._advance()

    # -- Debug / introspection --

    def dump_regs(self) -> str:
        lines = []
        for row in range(0, NUM_REGS, 4):
            lines.append("  " + "  ".join(
                f"V{i:X} = {self.regs[i]:#04x}" for i in range(row, row + 4)))
        lines.append(f"  I  = {self._i:#05x}  PC = {self.pc:#05x}  "
                     f"SP = {self.sp}")
        lines.append(f"  DT = {self.delay_timer}  ST = {self.sound_timer}")
        return "\n".join(lines)
