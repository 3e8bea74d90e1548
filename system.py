"""
CHIP-8 System Driver
=====================
Wires together:
  - one Chip8 core (chip8.py)
  - ROM file loading into the program region
  - the 16-key input latch
  - a frame scheduler: N instructions per frame, one timer tick per frame

The timers are ticked once per frame at ``timer_hz`` (60 Hz), never once
per instruction; ``instructions_per_tick`` only changes execution speed.
"""

from __future__ import annotations
import random
import time
from typing import Callable, Optional

from chip8 import Chip8, LoadError, NUM_KEYS, PROGRAM_START

DEFAULT_IPF      = 10    # instructions per frame
DEFAULT_TIMER_HZ = 60


class Chip8System:
    """A Chip8 core plus the driver-side plumbing around it."""

    def __init__(self, cpu: Optional[Chip8] = None,
                 instructions_per_tick: int = DEFAULT_IPF,
                 timer_hz: int = DEFAULT_TIMER_HZ,
                 rng: Optional[random.Random] = None):
        if instructions_per_tick < 1:
            raise ValueError("instructions_per_tick must be >= 1")
        if timer_hz < 1:
            raise ValueError("timer_hz must be >= 1")
        self.cpu = cpu if cpu is not None else Chip8(rng=rng)
        self.instructions_per_tick = instructions_per_tick
        self.timer_hz = timer_hz
        self.frame_count: int = 0
        self.rom: bytes = b""
        self.rom_path: Optional[str] = None

    # -----------------------------------------------------------------
    #  Loading
    # -----------------------------------------------------------------

    def load_rom(self, data: bytes | bytearray):
        """Load a ROM image from memory.  Raises LoadError if oversize."""
        self.cpu.load_program(data)
        self.rom = bytes(data)

    def load_rom_file(self, path: str) -> bool:
        """Load a ROM file.  Prints progress; returns False on failure."""
        print(f"Loading: {path}")
        try:
            with open(path, "rb") as f:
                data = f.read()
        except OSError as e:
            print(f"Error: Failed to open file ({e.strerror or e})")
            return False
        print(f"File size: {len(data)} bytes")
        try:
            self.load_rom(data)
        except LoadError:
            print("Error: ROM is too big!")
            return False
        self.rom_path = path
        return True

    # -----------------------------------------------------------------
    #  Boot
    # -----------------------------------------------------------------

    def boot(self):
        """Reset the machine, keeping the loaded ROM image."""
        self.cpu.reset()
        if self.rom:
            self.cpu.load_program(self.rom)
        self.frame_count = 0

    # -----------------------------------------------------------------
    #  Input latch
    # -----------------------------------------------------------------

    def _check_key(self, key: int):
        if not 0 <= key < NUM_KEYS:
            raise ValueError(f"Key must be 0x0-0xF, got {key!r}")

    def key_down(self, key: int):
        self._check_key(key)
        self.cpu.keys[key] = True

    def key_up(self, key: int):
        self._check_key(key)
        self.cpu.keys[key] = False

    def release_all_keys(self):
        self.cpu.keys = [False] * NUM_KEYS

    # -----------------------------------------------------------------
    #  Scheduling
    # -----------------------------------------------------------------

    def step(self):
        """Execute one instruction (no timer tick)."""
        self.cpu.step()

    def run_frame(self) -> int:
        """Run one frame: instructions_per_tick steps, then one tick.

        Returns the number of instructions executed.
        """
        cpu = self.cpu
        for _ in range(self.instructions_per_tick):
            cpu.step()
        cpu.tick()
        self.frame_count += 1
        return self.instructions_per_tick

    def run_frames(self, frames: int) -> int:
        """Run *frames* frames back to back, unpaced."""
        total = 0
        for _ in range(frames):
            total += self.run_frame()
        return total

    def run_realtime(self, frames: Optional[int] = None,
                     on_frame: Optional[Callable[["Chip8System"], bool]] = None) -> int:
        """Run frames paced to timer_hz of wall-clock time.

        Stops after *frames* frames (forever if None) or when *on_frame*
        returns False.  Returns the number of frames run.
        """
        period = 1.0 / self.timer_hz
        deadline = time.perf_counter()
        done = 0
        while frames is None or done < frames:
            self.run_frame()
            done += 1
            if on_frame is not None and on_frame(self) is False:
                break
            deadline += period
            delay = deadline - time.perf_counter()
            if delay > 0:
                time.sleep(delay)
            else:
                # fell behind; don't try to catch up in a burst
                deadline = time.perf_counter()
        return done

    # -----------------------------------------------------------------
    #  Introspection
    # -----------------------------------------------------------------

    def dump_state(self) -> str:
        """Registers, stack, timers and keys as text."""
        cpu = self.cpu
        lines = ["=== Registers ===", cpu.dump_regs(), ""]
        stack = " ".join(f"{a:#05x}" for a in cpu.stack[:cpu.sp]) or "(empty)"
        lines.append(f"  Stack [{cpu.sp}/16]: {stack}")
        pressed = " ".join(f"{k:X}" for k in range(NUM_KEYS) if cpu.keys[k])
        lines.append(f"  Keys: {pressed or '(none)'}")
        lines.append(f"  Steps: {cpu.step_count}  Frames: {self.frame_count}  "
                     f"IPF: {self.instructions_per_tick}  "
                     f"Unknown: {cpu.unknown_count}")
        lines.append(f"  ROM: {self.rom_path or 'N/A'} "
                     f"({len(self.rom)} bytes @ {PROGRAM_START:#05x})")
        return "\n".join(lines)
