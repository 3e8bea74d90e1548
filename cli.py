#!/usr/bin/env python3
"""
CHIP-8 Monitor / CLI
=====================
Command-line front end for the CHIP-8 virtual machine.
Provides:
  - ROM loading and a pygame window (default)
  - Headless runs for a fixed number of frames
  - An interactive debug monitor: step / run / breakpoints,
    register and memory inspection, disassembly, key injection
  - Assembling source files to ROM images

Usage:
  python cli.py ROM [--ipf N] [--scale N] [--seed N]
  python cli.py ROM --headless [FRAMES]
  python cli.py ROM --monitor
  python cli.py --assemble SRC.asm OUT.ch8 [--listing]
"""

from __future__ import annotations
import argparse
import cmd
import random
import readline
import shlex
import sys
from typing import Optional

from chip8 import (Chip8, FaultError, LoadError, decode, MEM_SIZE, NUM_KEYS)
from asm import assemble, AsmError
from system import Chip8System, DEFAULT_IPF

# ---------------------------------------------------------------------------
#  Disassembler
# ---------------------------------------------------------------------------

ALU_MNEM = {"MOV": "LD", "OR": "OR", "AND": "AND", "XOR": "XOR",
            "ADDC": "ADD", "SUB": "SUB"}


def disasm_word(word: int) -> str:
    """Disassemble one instruction word."""
    ins = decode(word)
    op = ins.op
    vx, vy = f"V{ins.x:X}", f"V{ins.y:X}"
    if op == "CLS":   return "CLS"
    if op == "RET":   return "RET"
    if op == "JP":    return f"JP {ins.nnn:#05x}"
    if op == "CALL":  return f"CALL {ins.nnn:#05x}"
    if op == "SE":    return f"SE {vx}, {ins.nn:#04x}"
    if op == "SNE":   return f"SNE {vx}, {ins.nn:#04x}"
    if op == "LD":    return f"LD {vx}, {ins.nn:#04x}"
    if op == "ADD":   return f"ADD {vx}, {ins.nn:#04x}"
    if op in ALU_MNEM:
        return f"{ALU_MNEM[op]} {vx}, {vy}"
    if op == "LDI":   return f"LD I, {ins.nnn:#05x}"
    if op == "RND":   return f"RND {vx}, {ins.nn:#04x}"
    if op == "DRW":   return f"DRW {vx}, {vy}, {ins.n}"
    if op == "SKP":   return f"SKP {vx}"
    if op == "SKNP":  return f"SKNP {vx}"
    if op == "LDDT":  return f"LD {vx}, DT"
    if op == "SETDT": return f"LD DT, {vx}"
    if op == "SETST": return f"LD ST, {vx}"
    return f".dw {word:#06x}"


def disasm_one(mem: bytearray | bytes, addr: int) -> tuple[str, int]:
    """Disassemble the word at `addr`. Returns (text, byte_count)."""
    if addr + 1 >= len(mem):
        return f".db {mem[addr]:#04x}" if addr < len(mem) else "???", 1
    return disasm_word((mem[addr] << 8) | mem[addr + 1]), 2

# ---------------------------------------------------------------------------
#  CLI
# ---------------------------------------------------------------------------

class Chip8CLI(cmd.Cmd):
    """Interactive monitor for the CHIP-8 machine."""

    intro = (
        "\n"
        "CHIP-8 Monitor.  Type 'help' for commands, 'quit' to exit.\n"
    )
    prompt = "C8> "

    def __init__(self, system: Chip8System):
        super().__init__()
        self.sys = system
        self.breakpoints: set[int] = set()

    @property
    def cpu(self) -> Chip8:
        return self.sys.cpu

    # -- Parsing helpers --

    def _parse_addr(self, s: str) -> int:
        """Parse an address (0x hex, decimal, 'pc' or 'i')."""
        s = s.strip().lower()
        if s == "pc":
            return self.cpu.pc
        if s == "i":
            return self.cpu.i_reg
        return int(s, 0)

    def _parse_int(self, s: str) -> int:
        return int(s.strip(), 0)

    def onecmd(self, line):
        """Bad numeric arguments print the command's usage instead of
        ending the monitor."""
        try:
            return super().onecmd(line)
        except ValueError as e:
            print(f"  Error: {e}")
            name = self.parseline(line)[0]
            func = getattr(self, f"do_{name}", None) if name else None
            if func is not None and func.__doc__:
                print(f"  {func.__doc__.splitlines()[0]}")
            return False

    def _step_one(self) -> bool:
        """Step once, printing the instruction.  False on fault."""
        addr = self.cpu.pc
        try:
            self.cpu.step()
        except FaultError as e:
            print(f"Fault: {e}")
            return False
        text, _ = disasm_one(self.cpu.mem, addr)
        print(f"  {addr:#05x}: {text}")
        return True

    # ================================================================
    #  Commands
    # ================================================================

    # -- Loading --

    def do_load(self, arg):
        """Load a ROM file at 0x200: load <file>"""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: load <file>")
            return
        if self.sys.load_rom_file(parts[0]):
            self.sys.boot()
            print(f"Loaded {len(self.sys.rom)} bytes; machine reset.")

    def do_asm(self, arg):
        """Assemble source and load as the ROM: asm <file.asm>
        Or inline:  asm -e "ld v0, 5; add v0, 1" """
        parts = shlex.split(arg)
        if not parts:
            print("Usage: asm <file.asm>  OR  asm -e \"code\"")
            return
        if parts[0] == "-e":
            source = parts[1].replace(";", "\n") if len(parts) > 1 else ""
        else:
            try:
                with open(parts[0], "r") as f:
                    source = f.read()
            except OSError as e:
                print(f"Error reading '{parts[0]}': {e}")
                return
        try:
            code = assemble(source)
            self.sys.load_rom(code)
        except (AsmError, LoadError) as e:
            print(f"Assembly error: {e}")
            return
        self.sys.boot()
        print(f"Assembled {len(code)} bytes at 0x200; machine reset.")

    def do_reset(self, arg):
        """Reset the machine, keeping the loaded ROM."""
        self.sys.boot()
        print("Machine reset.")

    # -- Execution --

    def do_step(self, arg):
        """Step N instructions: step [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            if not self._step_one():
                break

    def do_run(self, arg):
        """Run until breakpoint, fault, or a jump-to-self: run [max_steps]"""
        max_steps = self._parse_int(arg) if arg.strip() else 1_000_000
        for n in range(max_steps):
            pc = self.cpu.pc
            if n and pc in self.breakpoints:
                print(f"Breakpoint hit at {pc:#05x} after {n} steps.")
                return
            if self.cpu.spinning:
                print(f"Spinning at {pc:#05x} after {n} steps.")
                return
            try:
                self.cpu.step()
            except FaultError as e:
                print(f"Fault after {n} steps: {e}")
                return
        print(f"Stopped after {max_steps} steps.")

    def do_continue(self, arg):
        """Alias for 'run'."""
        self.do_run(arg)
    do_c = do_continue

    def do_tick(self, arg):
        """Tick the timers N times: tick [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        for _ in range(count):
            self.cpu.tick()
        print(f"  DT={self.cpu.delay_timer}  ST={self.cpu.sound_timer}")

    def do_frame(self, arg):
        """Run N scheduler frames (IPF steps + 1 tick each): frame [count]"""
        count = self._parse_int(arg) if arg.strip() else 1
        try:
            self.sys.run_frames(count)
        except FaultError as e:
            print(f"Fault: {e}")
            return
        print(f"  frame {self.sys.frame_count}, PC={self.cpu.pc:#05x}")

    # -- Breakpoints --

    def do_bp(self, arg):
        """Set breakpoint: bp <address>"""
        if not arg.strip():
            if self.breakpoints:
                print("Breakpoints:")
                for a in sorted(self.breakpoints):
                    print(f"  {a:#05x}")
            else:
                print("No breakpoints set.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.add(addr)
        print(f"Breakpoint set at {addr:#05x}")

    def do_bpd(self, arg):
        """Delete breakpoint: bpd <address|all>"""
        if arg.strip().lower() == "all":
            self.breakpoints.clear()
            print("All breakpoints cleared.")
            return
        addr = self._parse_addr(arg)
        self.breakpoints.discard(addr)
        print(f"Breakpoint at {addr:#05x} removed.")

    # -- Inspection --

    def do_regs(self, arg):
        """Show registers."""
        print(self.cpu.dump_regs())

    def do_setreg(self, arg):
        """Set register: setreg <V0-VF|i|pc|dt|st> <value>"""
        parts = shlex.split(arg)
        if len(parts) < 2:
            print("Usage: setreg <reg> <value>")
            return
        reg_s = parts[0].lower()
        val = self._parse_int(parts[1])
        cpu = self.cpu
        if reg_s == "pc":
            cpu.pc = val & 0xFFF
        elif reg_s == "i":
            cpu.i_reg = val
        elif reg_s == "dt":
            cpu.delay_timer = val & 0xFF
        elif reg_s == "st":
            cpu.sound_timer = val & 0xFF
        elif len(reg_s) == 2 and reg_s[0] == "v" and reg_s[1] in "0123456789abcdef":
            cpu.regs[int(reg_s[1], 16)] = val & 0xFF
        else:
            print("Unknown register.")
            return
        print(f"  {reg_s.upper()} = {val:#x}")

    def do_dump(self, arg):
        """Hex dump memory: dump <address> [count]
        Count defaults to 64 bytes."""
        parts = shlex.split(arg)
        if not parts:
            print("Usage: dump <address> [count]")
            return
        addr = self._parse_addr(parts[0])
        count = self._parse_int(parts[1]) if len(parts) > 1 else 64
        end = min(addr + count, MEM_SIZE)
        for row_start in range(addr, end, 16):
            row = self.cpu.mem[row_start:min(row_start + 16, end)]
            hex_str = " ".join(f"{b:02x}" for b in row)
            print(f"  {row_start:#05x}: {hex_str}")

    def do_setmem(self, arg):
        """Set memory bytes: setmem <address> <byte> [byte] ..."""
        parts = shlex.split(arg)
        if len(parts) < 2:
            print("Usage: setmem <addr> <byte...>")
            return
        addr = self._parse_addr(parts[0])
        try:
            for i, tok in enumerate(parts[1:]):
                self.cpu.mem_write8(addr + i, self._parse_int(tok))
        except FaultError as e:
            print(f"Error: {e}")
            return
        print(f"  Wrote {len(parts) - 1} bytes at {addr:#05x}")

    def do_disasm(self, arg):
        """Disassemble: disasm [address] [count]
        Defaults to current PC, 16 instructions."""
        parts = shlex.split(arg)
        addr = self._parse_addr(parts[0]) if parts else self.cpu.pc
        count = self._parse_int(parts[1]) if len(parts) > 1 else 16
        for _ in range(count):
            if addr >= MEM_SIZE:
                break
            text, size = disasm_one(self.cpu.mem, addr)
            raw = " ".join(f"{b:02x}" for b in self.cpu.mem[addr:addr + size])
            marker = ">>>" if addr == self.cpu.pc else "   "
            print(f"  {marker} {addr:#05x}: {raw:<6s} {text}")
            addr += size

    def do_screen(self, arg):
        """Print the framebuffer as text."""
        for row in self.cpu.frame():
            print("".join("#" if c else "." for c in row))

    def do_key(self, arg):
        """Press or release a key: key <0-F> [up]"""
        parts = shlex.split(arg)
        if not parts:
            pressed = [f"{k:X}" for k in range(NUM_KEYS) if self.cpu.keys[k]]
            print(f"  Pressed: {' '.join(pressed) or '(none)'}")
            return
        try:
            k = int(parts[0], 16)
            if len(parts) > 1 and parts[1].lower() == "up":
                self.sys.key_up(k)
            else:
                self.sys.key_down(k)
        except ValueError as e:
            print(f"Error: {e}")

    def do_status(self, arg):
        """Show full machine status."""
        print(self.sys.dump_state())

    # -- Misc --

    def do_quit(self, arg):
        """Exit the monitor."""
        print("Goodbye.")
        return True
    do_exit = do_quit
    do_q = do_quit

    def do_EOF(self, arg):
        print()
        return self.do_quit(arg)

    def default(self, line):
        print(f"Unknown command: {line.split()[0]!r}. Type 'help' for available commands.")

    def emptyline(self):
        pass


# ---------------------------------------------------------------------------
#  Main
# ---------------------------------------------------------------------------

class _ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with status 1."""

    def error(self, message):
        self.print_usage(sys.stderr)
        print(f"{self.prog}: error: {message}", file=sys.stderr)
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="chip8",
        description="CHIP-8 virtual machine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  chip8 pong.ch8\n"
               "  chip8 pong.ch8 --ipf 15 --scale 12\n"
               "  chip8 pong.ch8 --headless 600\n"
               "  chip8 pong.ch8 --monitor\n"
               "  chip8 --assemble demo.asm demo.ch8 --listing\n"
    )
    parser.add_argument("rom", nargs="?", default=None,
                        help="ROM image to run")
    parser.add_argument("--ipf", type=int, default=DEFAULT_IPF, metavar="N",
                        help=f"Instructions per 60 Hz frame (default: {DEFAULT_IPF})")
    parser.add_argument("--scale", type=int, default=10, metavar="N",
                        help="Pixel scale factor for the window (default: 10)")
    parser.add_argument("--seed", type=int, default=None,
                        help="Seed for the RND instruction")
    parser.add_argument("--headless", type=int, nargs="?", const=600,
                        default=None, metavar="FRAMES",
                        help="Run FRAMES frames without a window, then print "
                             "the screen (default: 600)")
    parser.add_argument("--monitor", action="store_true",
                        help="Start in the interactive debug monitor")
    parser.add_argument("--assemble", nargs=2, metavar=("SRC", "OUT"),
                        help="Assemble SRC to the ROM image OUT and exit")
    parser.add_argument("--listing", "-l", action="store_true",
                        help="Print assembly listing (with --assemble)")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # ---- Assemble-only mode -------------------------------------------
    if args.assemble:
        src_path, out_path = args.assemble
        try:
            with open(src_path, "r") as f:
                source = f.read()
            code = assemble(source, listing=args.listing)
        except (OSError, AsmError) as e:
            print(f"Assembly error: {e}", file=sys.stderr)
            return 1
        with open(out_path, "wb") as f:
            f.write(code)
        print(f"Assembled {src_path} → {out_path} ({len(code)} bytes)")
        return 0

    if args.rom is None:
        parser.print_usage(sys.stderr)
        print(f"{parser.prog}: error: a ROM file is required", file=sys.stderr)
        return 1
    if args.ipf < 1:
        print(f"{parser.prog}: error: --ipf must be >= 1", file=sys.stderr)
        return 1

    rng = random.Random(args.seed) if args.seed is not None else None
    sys_emu = Chip8System(instructions_per_tick=args.ipf, rng=rng)
    if not sys_emu.load_rom_file(args.rom):
        return 1
    print("ROM loaded successfully.")

    if args.monitor:
        cli = Chip8CLI(sys_emu)
        try:
            cli.cmdloop()
        except KeyboardInterrupt:
            print("\nInterrupted. Goodbye.")
        return 0

    if args.headless is not None:
        from display import HeadlessDisplay
        disp = HeadlessDisplay(sys_emu)
        fault = None
        try:
            disp.run(args.headless)
        except FaultError as e:
            fault = e
            print(f"Machine fault: {e}", file=sys.stderr)
        print(disp.render_text())
        print(f"{sys_emu.frame_count} frames, {sys_emu.cpu.step_count} steps")
        return 1 if fault else 0

    try:
        from display import FramebufferDisplay
        import pygame  # noqa: F401
    except ImportError as e:
        print(f"[display] pygame not available: {e}", file=sys.stderr)
        print("[display] Install with: pip install pygame", file=sys.stderr)
        return 1
    disp = FramebufferDisplay(sys_emu, scale=args.scale)
    disp.run()
    return 1 if disp.fault else 0


if __name__ == "__main__":
    sys.exit(main())
