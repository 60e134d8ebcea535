# ESC/POS Encoder for TillSync
# Builds receipt printer command streams

import logging
from enum import IntEnum
from typing import List, Union

logger = logging.getLogger(__name__)

Fragment = Union[str, bytes]


class Alignment(IntEnum):
    LEFT = 0
    CENTER = 1
    RIGHT = 2


class ESCPOSEncoder:
    """Chaining builder over an append-only ESC/POS command buffer"""

    # ESC/POS command constants
    ESC = b'\x1b'
    GS = b'\x1d'
    LF = b'\x0a'
    NUL = b'\x00'

    CMD_INITIALIZE = ESC + b'@'   # ESC @ Initialize
    CMD_SIZE = GS + b'!'          # GS ! Character size
    CMD_ALIGN = ESC + b'a'        # ESC a Alignment
    CMD_BOLD = ESC + b'E'         # ESC E Bold
    CMD_BARCODE = GS + b'k'       # GS k Barcode
    CMD_QR = GS + b'(k'           # GS ( k 2D symbol
    CMD_CUT = GS + b'V'           # GS V Cut

    # GS k symbology codes: 0-6 are function A (NUL terminated),
    # 65 and up are function B (length prefixed)
    BARCODE_TYPES = {
        'UPCA': 0,
        'UPCE': 1,
        'EAN13': 2,
        'EAN8': 3,
        'CODE39': 4,
        'ITF': 5,
        'CODABAR': 6,
        'CODE128': 73,
    }
    DEFAULT_BARCODE = 'CODE128'
    FUNCTION_B_MIN = 65
    CODE128_SET_B = b'{B'

    # GS ( k: cn=49 (QR), fn 80 store / 67 module size / 81 print
    QR_CN = 49
    QR_STORE = 80
    QR_MODULE_SIZE = 67
    QR_PRINT = 81
    QR_HEADER_BYTES = 3  # cn, fn, m

    def __init__(self, encoding: str = 'cp1252'):
        self.encoding = encoding
        self.buffer: List[Fragment] = []

    def add_command(self, command: Fragment) -> 'ESCPOSEncoder':
        self.buffer.append(command)
        return self

    def initialize(self) -> 'ESCPOSEncoder':
        return self.add_command(self.CMD_INITIALIZE)

    def set_size(self, width: int = 1, height: int = 1) -> 'ESCPOSEncoder':
        """Set width/height multipliers (1-8 each).

        Packed as (width << 4) | height, so set_size(2, 3) emits GS ! 0x23.
        """
        for name, value in (('width', width), ('height', height)):
            if not 1 <= value <= 8:
                raise ValueError(f"Text {name} multiplier must be 1-8, got {value}")
        size_code = ((width & 0x0F) << 4) | (height & 0x0F)
        return self.add_command(self.CMD_SIZE + bytes([size_code]))

    def set_alignment(self, alignment: Alignment = Alignment.LEFT) -> 'ESCPOSEncoder':
        return self.add_command(self.CMD_ALIGN + bytes([Alignment(alignment)]))

    def set_bold(self, bold: bool = True) -> 'ESCPOSEncoder':
        return self.add_command(self.CMD_BOLD + (b'\x01' if bold else b'\x00'))

    def text(self, value: str) -> 'ESCPOSEncoder':
        return self.add_command(value + '\n')

    def new_line(self, count: int = 1) -> 'ESCPOSEncoder':
        for _ in range(count):
            self.add_command(self.LF)
        return self

    def separator(self, char: str = '-', width: int = 32) -> 'ESCPOSEncoder':
        return self.text(char * width)

    def barcode(self, code: str, bc_type: str = DEFAULT_BARCODE) -> 'ESCPOSEncoder':
        type_code = self.get_barcode_type(bc_type)
        data = code.encode('ascii', errors='ignore')
        if type_code < self.FUNCTION_B_MIN:
            # GS k m d1...dk NUL
            self.add_command(self.CMD_BARCODE + bytes([type_code]))
            return self.add_command(data + self.NUL)

        # GS k m n d1...dn
        if type_code == self.BARCODE_TYPES['CODE128'] and not data.startswith(b'{'):
            data = self.CODE128_SET_B + data
        if len(data) > 0xFF:
            raise ValueError(f"Barcode data too long: {len(data)} bytes")
        self.add_command(self.CMD_BARCODE + bytes([type_code, len(data)]))
        return self.add_command(data)

    def qr_code(self, data: str, size: int = 3) -> 'ESCPOSEncoder':
        """Store, size and print a QR symbol.

        The store command carries pL pH = little-endian length of the UTF-8
        payload plus the three header bytes (cn fn m).
        """
        payload = data.encode('utf-8')
        data_length = len(payload) + self.QR_HEADER_BYTES
        if data_length > 0xFFFF:
            raise ValueError(f"QR payload too long: {len(payload)} bytes")
        p_l = data_length & 0xFF
        p_h = (data_length >> 8) & 0xFF

        self.add_command(self.CMD_QR + bytes([p_l, p_h, self.QR_CN, self.QR_STORE, 48]))
        self.add_command(payload)
        self.add_command(self.CMD_QR + bytes([3, 0, self.QR_CN, self.QR_MODULE_SIZE, size & 0xFF]))
        self.add_command(self.CMD_QR + bytes([3, 0, self.QR_CN, self.QR_PRINT, 48]))
        return self

    def get_barcode_type(self, bc_type: str) -> int:
        type_code = self.BARCODE_TYPES.get((bc_type or '').upper())
        if type_code is None:
            logger.debug("Unknown barcode type %r, using %s", bc_type, self.DEFAULT_BARCODE)
            return self.BARCODE_TYPES[self.DEFAULT_BARCODE]
        return type_code

    def partial_cut(self) -> 'ESCPOSEncoder':
        return self.add_command(self.CMD_CUT + b'\x01')

    def full_cut(self) -> 'ESCPOSEncoder':
        return self.add_command(self.CMD_CUT + b'\x00')

    def serialize(self) -> bytes:
        """Flatten every fragment into one byte string (text encoded, bytes verbatim)."""
        out = bytearray()
        for fragment in self.buffer:
            if isinstance(fragment, str):
                out += fragment.encode(self.encoding, errors='replace')
            else:
                out += fragment
        return bytes(out)

    def reset(self) -> 'ESCPOSEncoder':
        self.buffer = []
        return self
