"""
CHIP-8 Assembler
=================
Translates assembly text into CHIP-8 machine words (big-endian).

Supports:
  - Labels (terminated with ':')
  - The instruction subset the VM executes:
      cls, ret, jp, call, se, sne, ld, add, or, and, xor, sub,
      rnd, drw, skp, sknp
  - Immediate literals (decimal, 0x hex, 0b binary, #hex)
  - Comments (';' to end of line)
  - .org, .db, .dw directives

Usage:
  from asm import assemble
  rom = assemble(source_text)          # origin defaults to 0x200
"""

from __future__ import annotations

from chip8 import PROGRAM_START, MEM_SIZE

# ---------------------------------------------------------------------------
#  Operand maps
# ---------------------------------------------------------------------------

# ALU sub-op map (family 0x8, low nibble)
ALU_SUB = {
    "or": 0x1, "and": 0x2, "xor": 0x3, "sub": 0x5,
}

# Timer loads (family 0xF, low byte)
TIMER_SUB = {
    ("reg", "dt"): 0x07,    # ld vx, dt
    ("dt", "reg"): 0x15,    # ld dt, vx
    ("st", "reg"): 0x18,    # ld st, vx
}

# ---------------------------------------------------------------------------
#  Parser helpers
# ---------------------------------------------------------------------------

def _parse_reg(tok: str) -> int:
    """Parse 'V0'-'VF' (any case). Returns register index."""
    tok = tok.strip().lower()
    if len(tok) == 2 and tok[0] == "v" and tok[1] in "0123456789abcdef":
        return int(tok[1], 16)
    raise ValueError(f"Invalid register: {tok!r}")

def _is_reg(tok: str) -> bool:
    try:
        _parse_reg(tok)
        return True
    except ValueError:
        return False

def _parse_imm(tok: str) -> int:
    """Parse an immediate value (decimal, 0x hex, 0b binary, #hex)."""
    tok = tok.strip()
    if tok.startswith("#"):
        return int(tok[1:], 16)
    if tok.startswith("-"):
        return int(tok, 10)
    return int(tok, 0)

def _split_ops(rest: str) -> list[str]:
    """Split operand string by comma, trimming whitespace."""
    return [s.strip() for s in rest.split(",") if s.strip()]

def _split_mnemonic(text: str) -> tuple[str, str]:
    """Split 'MNEM operands' → (mnem, operands_str)."""
    parts = text.split(None, 1)
    if len(parts) == 1:
        return parts[0], ""
    return parts[0], parts[1]

# ---------------------------------------------------------------------------
#  Assembler
# ---------------------------------------------------------------------------

class AsmError(Exception):
    def __init__(self, line: int, msg: str):
        self.line = line
        super().__init__(f"Line {line}: {msg}")


def assemble(source: str, base_addr: int = PROGRAM_START,
             listing: bool = False) -> bytearray:
    """
    Two-pass assembler.
    Pass 1: collect labels, compute sizes.
    Pass 2: emit bytes with resolved addresses.
    If listing=True, print an address/hex/source listing to stdout.
    """
    cleaned: list[tuple[int, str]] = []
    for i, raw in enumerate(source.split("\n"), 1):
        stripped = raw.split(";", 1)[0].strip()
        if stripped:
            cleaned.append((i, stripped))

    # ---- Pass 1: label collection and size computation ----
    labels: dict[str, int] = {}
    sizes: list[tuple[int, str, int]] = []  # (line_no, text, size_bytes)
    pc = base_addr

    for lineno, text in cleaned:
        # A label may share its line with an instruction: "loop: jp loop"
        while ":" in text:
            lbl, _, text = text.partition(":")
            lbl = lbl.strip()
            if not lbl or not (lbl[0].isalpha() or lbl[0] == "_"):
                raise AsmError(lineno, f"Bad label: {lbl!r}")
            if _operand_kind(lbl) != "imm":
                raise AsmError(lineno, f"Bad label: {lbl!r} is a register name")
            if lbl.lower() in labels:
                raise AsmError(lineno, f"Duplicate label: {lbl}")
            labels[lbl.lower()] = pc
            text = text.strip()
        if not text:
            continue

        lower = text.lower()
        if lower.startswith(".org"):
            try:
                target = _parse_imm(text[4:])
            except ValueError:
                raise AsmError(lineno, f"Bad .org operand: {text[4:].strip()!r}")
            if target < pc:
                raise AsmError(lineno, f".org {target:#x} moves backwards "
                                       f"(pc={pc:#x})")
            sizes.append((lineno, text, target - pc))
            pc = target
            continue
        if lower.startswith(".db"):
            n = len(_split_ops(text[3:]))
            sizes.append((lineno, text, n))
            pc += n
            continue
        if lower.startswith(".dw"):
            n = len(_split_ops(text[3:])) * 2
            sizes.append((lineno, text, n))
            pc += n
            continue

        sizes.append((lineno, text, 2))
        pc += 2

    if pc > MEM_SIZE:
        raise AsmError(cleaned[-1][0] if cleaned else 0,
                       f"Program ends at {pc:#x}, past end of memory")

    # ---- Pass 2: emit bytes ----
    code = bytearray()
    pc = base_addr
    listing_lines = []  # (addr, hex_bytes, source_text)

    for lineno, text, sz in sizes:
        start_pc = pc
        lower = text.lower()

        if lower.startswith(".org"):
            code.extend(bytes(sz))
            pc += sz
            if listing:
                listing_lines.append((start_pc, "", text))
            continue

        if lower.startswith(".db"):
            for tok in _split_ops(text[3:]):
                code.append(_byte(lineno, tok, labels))
        elif lower.startswith(".dw"):
            for tok in _split_ops(text[3:]):
                v = _word(lineno, tok, labels)
                code.append((v >> 8) & 0xFF)
                code.append(v & 0xFF)
        else:
            word = _emit_instruction(lineno, text, labels)
            code.append((word >> 8) & 0xFF)
            code.append(word & 0xFF)
        pc += sz

        if listing:
            emitted = code[start_pc - base_addr:pc - base_addr]
            hexstr = " ".join(f"{b:02X}" for b in emitted[:8])
            if len(emitted) > 8:
                hexstr += " ..."
            listing_lines.append((start_pc, hexstr, text))

    if listing:
        addr_labels: dict[int, list[str]] = {}
        for lbl, addr in labels.items():
            addr_labels.setdefault(addr, []).append(lbl)
        for addr, hexstr, src in listing_lines:
            for lbl in addr_labels.pop(addr, []):
                print(f"                  {lbl}:")
            print(f"  {addr:04X}  {hexstr:<12s}  {src}")
        for addr in sorted(addr_labels):
            for lbl in addr_labels[addr]:
                print(f"                  {lbl}:")

    return code


# ---------------------------------------------------------------------------
#  Instruction encoding (pass 2)
# ---------------------------------------------------------------------------

def _resolve(lineno: int, tok: str, labels: dict[str, int]) -> int:
    """Resolve a token that is either an immediate or a label reference."""
    tok = tok.strip()
    if tok.lower() in labels:
        return labels[tok.lower()]
    try:
        return _parse_imm(tok)
    except ValueError:
        raise AsmError(lineno, f"Unknown label or bad literal: {tok!r}")


def _addr(lineno: int, tok: str, labels: dict[str, int]) -> int:
    v = _resolve(lineno, tok, labels)
    if not 0 <= v <= 0xFFF:
        raise AsmError(lineno, f"Address {v:#x} out of range")
    return v


def _byte(lineno: int, tok: str, labels: dict[str, int]) -> int:
    v = _resolve(lineno, tok, labels)
    if not -128 <= v <= 0xFF:
        raise AsmError(lineno, f"Byte value {v} out of range")
    return v & 0xFF


def _word(lineno: int, tok: str, labels: dict[str, int]) -> int:
    v = _resolve(lineno, tok, labels)
    if not -32768 <= v <= 0xFFFF:
        raise AsmError(lineno, f"Word value {v} out of range")
    return v & 0xFFFF


def _reg(lineno: int, tok: str) -> int:
    try:
        return _parse_reg(tok)
    except ValueError as e:
        raise AsmError(lineno, str(e))


def _operand_kind(tok: str) -> str:
    t = tok.strip().lower()
    if t in ("i", "dt", "st"):
        return t
    if _is_reg(t):
        return "reg"
    return "imm"


def _emit_instruction(lineno: int, text: str,
                      labels: dict[str, int]) -> int:
    """Return the 16-bit machine word for one instruction."""
    mnem, rest = _split_mnemonic(text)
    m = mnem.lower()
    ops = _split_ops(rest)

    def want(count: int):
        if len(ops) != count:
            raise AsmError(lineno, f"{m} takes {count} operand(s), "
                                   f"got {len(ops)}")

    if m == "cls":
        want(0)
        return 0x00E0
    if m == "ret":
        want(0)
        return 0x00EE

    if m == "jp":
        want(1)
        return 0x1000 | _addr(lineno, ops[0], labels)
    if m == "call":
        want(1)
        return 0x2000 | _addr(lineno, ops[0], labels)

    if m in ("se", "sne"):
        want(2)
        if _operand_kind(ops[1]) != "imm":
            raise AsmError(lineno, f"{m} only compares a register "
                                   f"with a byte")
        x = _reg(lineno, ops[0])
        fam = 0x3000 if m == "se" else 0x4000
        return fam | (x << 8) | _byte(lineno, ops[1], labels)

    if m == "ld":
        want(2)
        dst, src = _operand_kind(ops[0]), _operand_kind(ops[1])
        if dst == "i" and src == "imm":
            return 0xA000 | _addr(lineno, ops[1], labels)
        if dst == "reg" and src == "imm":
            return 0x6000 | (_reg(lineno, ops[0]) << 8) | \
                _byte(lineno, ops[1], labels)
        if dst == "reg" and src == "reg":
            return 0x8000 | (_reg(lineno, ops[0]) << 8) | \
                (_reg(lineno, ops[1]) << 4)
        sub = TIMER_SUB.get((dst, src))
        if sub is not None:
            x = _reg(lineno, ops[0] if dst == "reg" else ops[1])
            return 0xF000 | (x << 8) | sub
        raise AsmError(lineno, f"Unsupported ld form: {rest.strip()}")

    if m == "add":
        want(2)
        x = _reg(lineno, ops[0])
        if _operand_kind(ops[1]) == "reg":
            return 0x8004 | (x << 8) | (_reg(lineno, ops[1]) << 4)
        return 0x7000 | (x << 8) | _byte(lineno, ops[1], labels)

    if m in ALU_SUB:
        want(2)
        return 0x8000 | (_reg(lineno, ops[0]) << 8) | \
            (_reg(lineno, ops[1]) << 4) | ALU_SUB[m]

    if m == "rnd":
        want(2)
        return 0xC000 | (_reg(lineno, ops[0]) << 8) | \
            _byte(lineno, ops[1], labels)

    if m == "drw":
        want(3)
        n = _resolve(lineno, ops[2], labels)
        if not 0 <= n <= 0xF:
            raise AsmError(lineno, f"Sprite height {n} out of range 0-15")
        return 0xD000 | (_reg(lineno, ops[0]) << 8) | \
            (_reg(lineno, ops[1]) << 4) | n

    if m == "skp":
        want(1)
        return 0xE09E | (_reg(lineno, ops[0]) << 8)
    if m == "sknp":
        want(1)
        return 0xE0A1 | (_reg(lineno, ops[0]) << 8)

    raise AsmError(lineno, f"Unknown mnemonic: {mnem!r}")
