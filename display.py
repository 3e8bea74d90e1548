"""
CHIP-8 Framebuffer Display
===========================
Renders the 64x32 framebuffer in a pygame window and feeds host key
events into the machine's key latch.

The window loop runs on the caller's thread: each iteration pumps
events, runs one scheduler frame, redraws if the dirty flag is set and
waits for the next 1/60 s slot.  Press ESC or close the window to stop.

Usage (programmatic):
    from display import FramebufferDisplay
    disp = FramebufferDisplay(sys_emu, scale=10)
    disp.run()          # blocks until the window is closed

Usage (CLI):
    python cli.py roms/pong.ch8 --scale 12
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import numpy as np

from chip8 import SCREEN_W, SCREEN_H, FaultError

if TYPE_CHECKING:
    from chip8 import Chip8
    from system import Chip8System

FG_COLOR = (255, 255, 255)
BG_COLOR = (0, 0, 0)

# Logical key → host key name, conventional layout:
#   1 2 3 C        1 2 3 4
#   4 5 6 D   ←    Q W E R
#   7 8 9 E        A S D F
#   A 0 B F        Z X C V
KEY_LAYOUT = {
    0x0: "x", 0x1: "1", 0x2: "2", 0x3: "3",
    0x4: "q", 0x5: "w", 0x6: "e", 0x7: "a",
    0x8: "s", 0x9: "d", 0xA: "z", 0xB: "c",
    0xC: "4", 0xD: "r", 0xE: "f", 0xF: "v",
}


def host_keymap(pygame_module) -> dict[int, int]:
    """Resolve KEY_LAYOUT to {pygame key code: logical key}."""
    return {pygame_module.key.key_code(name): k
            for k, name in KEY_LAYOUT.items()}


def framebuffer_rgb(cpu: "Chip8", fg=FG_COLOR, bg=BG_COLOR) -> np.ndarray:
    """Framebuffer as a (64, 32, 3) uint8 array, indexed [x, y] the way
    pygame.surfarray expects."""
    cells = np.frombuffer(bytes(cpu.gfx), dtype=np.uint8).reshape(SCREEN_H, SCREEN_W)
    lut = np.array([bg, fg], dtype=np.uint8)
    return lut[cells.T & 1]


class FramebufferDisplay:
    """pygame window bound to a Chip8System."""

    def __init__(self, sys_emu: "Chip8System", scale: int = 10,
                 fg=FG_COLOR, bg=BG_COLOR, title: str = "CHIP-8"):
        self.sys = sys_emu
        self.scale = scale
        self.fg = fg
        self.bg = bg
        self.title = title
        self.fault: FaultError | None = None
        self.frames: int = 0

    def run(self, frames: int | None = None) -> int:
        """Open the window and drive the machine until closed, a fault, or
        *frames* frames.  Returns frames run."""
        import pygame

        cpu = self.sys.cpu
        pygame.init()
        try:
            pygame.display.set_caption(self.title)
            screen = pygame.display.set_mode(
                (SCREEN_W * self.scale, SCREEN_H * self.scale))
            surface = pygame.Surface((SCREEN_W, SCREEN_H))
            clock = pygame.time.Clock()
            keymap = host_keymap(pygame)

            while frames is None or self.frames < frames:
                for event in pygame.event.get():
                    if event.type == pygame.QUIT:
                        return self.frames
                    elif event.type == pygame.KEYDOWN:
                        if event.key == pygame.K_ESCAPE:
                            return self.frames
                        if event.key in keymap:
                            self.sys.key_down(keymap[event.key])
                    elif event.type == pygame.KEYUP:
                        if event.key in keymap:
                            self.sys.key_up(keymap[event.key])

                try:
                    self.sys.run_frame()
                except FaultError as e:
                    self.fault = e
                    print(f"\n[display] machine fault: {e}")
                    return self.frames
                self.frames += 1

                if cpu.draw_flag:
                    pygame.surfarray.blit_array(
                        surface, framebuffer_rgb(cpu, self.fg, self.bg))
                    cpu.draw_flag = False
                    pygame.transform.scale(surface, screen.get_size(), screen)
                    pygame.display.flip()

                clock.tick(self.sys.timer_hz)
            return self.frames
        finally:
            pygame.quit()


class HeadlessDisplay:
    """No-window display for tests and batch runs; records framebuffer snapshots."""

    def __init__(self, sys_emu: "Chip8System"):
        self.sys = sys_emu
        self.snapshots: list[bytes] = []

    def snapshot(self) -> bytes | None:
        """Capture the frame if it is dirty, clearing the flag."""
        cpu = self.sys.cpu
        if not cpu.draw_flag:
            return None
        data = bytes(cpu.gfx)
        cpu.draw_flag = False
        self.snapshots.append(data)
        return data

    def run(self, frames: int) -> int:
        """Run *frames* scheduler frames, snapshotting after each."""
        for _ in range(frames):
            self.sys.run_frame()
            self.snapshot()
        return frames

    def render_text(self, on: str = "#", off: str = ".") -> str:
        """Current frame as 32 lines of text."""
        return "\n".join(
            "".join(on if c else off for c in row)
            for row in self.sys.cpu.frame())
