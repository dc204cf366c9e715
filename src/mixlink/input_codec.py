"""Binary frame encoding for pointer and keyboard input."""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import Mapping

import numpy as np


logger = logging.getLogger(__name__)


POINTER_TAG = 0x4D  # 'M'
KEYBOARD_TAG = 0x4B  # 'K'

POINTER_FRAME_SIZE = 32
_POINTER_FLOAT_OFFSET = 4
_POINTER_FLOAT_COUNT = 7

# float slots inside the pointer frame
_CURSOR_X = 0
_CURSOR_Y = 1
_ANCHOR_X = 2
_ANCHOR_Y = 3
_VIEW_WIDTH = 4
_VIEW_HEIGHT = 5
_WHEEL = 6

_UNSET = -1.0


def _build_key_codes() -> dict[str, int]:
    names = [
        "ControlLeft",
        "AltLeft",
        "OSLeft",
        "Space",
        "OSRight",
        "AltRight",
        "ControlRight",
        "ShiftLeft",
        "ShiftRight",
        "Comma",
        "Period",
        "Slash",
        "CapsLock",
        "Enter",
        "Semicolon",
        "Quote",
        "Tab",
        "BracketLeft",
        "BracketRight",
        "Backslash",
        "Backquote",
        "Minus",
        "Equal",
    ]
    names.extend(f"Digit{index}" for index in range(10))
    names.extend(
        [
            "Backspace",
            "Escape",
            "ArrowLeft",
            "ArrowRight",
            "ArrowDown",
            "ArrowUp",
            "PageDown",
            "PageUp",
            "End",
            "Home",
            "Delete",
            "Insert",
        ]
    )
    names.extend(f"Numpad{index}" for index in range(10))
    names.extend(
        [
            "NumpadDecimal",
            "NumpadEnter",
            "NumpadAdd",
            "NumpadSubtract",
            "NumLock",
            "NumpadEqual",
            "NumpadMultiply",
            "NumpadDivide",
        ]
    )
    names.extend(f"Key{chr(letter)}" for letter in range(ord("A"), ord("Z") + 1))
    return {name: code for code, name in enumerate(names)}


KEY_CODES: Mapping[str, int] = _build_key_codes()
KEYBOARD_BITSET_SIZE = (max(KEY_CODES.values()) >> 3) + 1
KEYBOARD_FRAME_SIZE = 1 + KEYBOARD_BITSET_SIZE

_CODE_NAMES = {code: name for name, code in KEY_CODES.items()}


def _key_position(code: int) -> tuple[int, int]:
    return 1 + (code >> 3), 1 << (code % 8)


@dataclass(frozen=True, slots=True)
class PointerFrame:
    """Decoded contents of a pointer frame."""

    buttons: int
    x: float
    y: float
    anchor_x: float
    anchor_y: float
    width: float
    height: float
    wheel: float


class PointerState:
    """Mutable pointer state packed into fixed 32 byte frames."""

    def __init__(self) -> None:
        self._buttons = 0
        self._values = np.zeros(_POINTER_FLOAT_COUNT, dtype="<f4")
        self._values[_CURSOR_X : _ANCHOR_Y + 1] = _UNSET

    # ------------------------------ properties -----------------------------
    @property
    def buttons(self) -> int:
        return self._buttons

    @property
    def position(self) -> tuple[float, float]:
        return float(self._values[_CURSOR_X]), float(self._values[_CURSOR_Y])

    @property
    def anchor(self) -> tuple[float, float]:
        return float(self._values[_ANCHOR_X]), float(self._values[_ANCHOR_Y])

    # ------------------------------ operations -----------------------------
    def move(self, x: float, y: float, width: float, height: float, buttons: int | None = None) -> bytes:
        """Record a cursor move inside a viewport of the given size."""

        if buttons is not None:
            self._set_buttons(buttons)
        self._values[_CURSOR_X] = x
        self._values[_CURSOR_Y] = y
        self._values[_VIEW_WIDTH] = width
        self._values[_VIEW_HEIGHT] = height
        return self.pack()

    def press(self, x: float, y: float, buttons: int) -> bytes:
        """Record a button press; the press position becomes the drag anchor."""

        self._set_buttons(buttons)
        self._values[_CURSOR_X] = x
        self._values[_CURSOR_Y] = y
        self._values[_ANCHOR_X] = x
        self._values[_ANCHOR_Y] = y
        return self.pack()

    def release(self, buttons: int) -> bytes:
        self._set_buttons(buttons)
        self._values[_CURSOR_X : _ANCHOR_Y + 1] = _UNSET
        return self.pack()

    def wheel(self, delta: float) -> bytes:
        """Return a frame carrying ``delta``; the wheel slot is cleared afterwards."""

        self._values[_WHEEL] = delta
        try:
            return self.pack()
        finally:
            self._values[_WHEEL] = 0.0

    def pack(self) -> bytes:
        header = bytes((POINTER_TAG, self._buttons, 0, 0))
        return header + self._values.tobytes()

    # ----------------------------- implementation --------------------------
    def _set_buttons(self, buttons: int) -> None:
        value = int(buttons)
        if value < 0 or value > 0xFF:
            raise ValueError("Button mask must fit in a single byte")
        self._buttons = value


class KeyboardState:
    """Bitset of pressed keys with edge-triggered updates."""

    def __init__(self) -> None:
        self._frame = np.zeros(KEYBOARD_FRAME_SIZE, dtype=np.uint8)
        self._frame[0] = KEYBOARD_TAG

    def press(self, key: str) -> bool:
        """Set the bit for ``key``. Returns ``True`` only when it was previously clear."""

        position = self._lookup(key)
        if position is None:
            return False
        index, mask = position
        if self._frame[index] & mask:
            return False
        self._frame[index] |= mask
        return True

    def release(self, key: str) -> bool:
        position = self._lookup(key)
        if position is None:
            return False
        index, mask = position
        if not self._frame[index] & mask:
            return False
        self._frame[index] &= np.uint8(~mask & 0xFF)
        return True

    def is_pressed(self, key: str) -> bool:
        position = self._lookup(key)
        if position is None:
            return False
        index, mask = position
        return bool(self._frame[index] & mask)

    def reset(self) -> None:
        self._frame[1:] = 0

    def pack(self) -> bytes:
        return self._frame.tobytes()

    @staticmethod
    def _lookup(key: str) -> tuple[int, int] | None:
        code = KEY_CODES.get(key)
        if code is None:
            logger.debug("Ignoring unmapped key %r", key)
            return None
        return _key_position(code)


def decode_pointer_frame(frame: bytes | bytearray | memoryview) -> PointerFrame:
    """Decode a pointer frame produced by :class:`PointerState`."""

    data = bytes(frame)
    if len(data) != POINTER_FRAME_SIZE:
        raise ValueError(f"Pointer frame must be {POINTER_FRAME_SIZE} bytes, got {len(data)}")
    if data[0] != POINTER_TAG:
        raise ValueError("Frame is not tagged as pointer input")
    values = struct.unpack_from(f"<{_POINTER_FLOAT_COUNT}f", data, _POINTER_FLOAT_OFFSET)
    return PointerFrame(data[1], *values)


def decode_keyboard_frame(frame: bytes | bytearray | memoryview) -> frozenset[str]:
    """Return the names of the keys held down in a keyboard frame."""

    data = np.frombuffer(bytes(frame), dtype=np.uint8)
    if data.size != KEYBOARD_FRAME_SIZE:
        raise ValueError(f"Keyboard frame must be {KEYBOARD_FRAME_SIZE} bytes, got {data.size}")
    if data[0] != KEYBOARD_TAG:
        raise ValueError("Frame is not tagged as keyboard input")
    bits = np.unpackbits(data[1:], bitorder="little")
    return frozenset(_CODE_NAMES[int(code)] for code in np.flatnonzero(bits) if int(code) in _CODE_NAMES)


__all__ = [
    "KEYBOARD_FRAME_SIZE",
    "KEYBOARD_TAG",
    "KEY_CODES",
    "KeyboardState",
    "POINTER_FRAME_SIZE",
    "POINTER_TAG",
    "PointerFrame",
    "PointerState",
    "decode_keyboard_frame",
    "decode_pointer_frame",
]
