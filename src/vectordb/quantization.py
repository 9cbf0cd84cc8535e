"""
Binary Quantization - 1-bit sign codes for fast approximate search.

Each coordinate becomes one bit (1 if the value is strictly positive, else 0),
so the coordinate axes act as the hyperplanes of a sign hash. Bits are packed
four at a time, most significant bit first, into uppercase hex nibbles:

    [1, -1, 1, -1, 1, -1, 1, -1]  ->  "1010 1010"  ->  "AA"
"""

import math
from typing import List, Sequence

from .core.exceptions import DimensionMismatchError, ValidationError


MIN_MAGNITUDE = 1e-10

_HEX_DIGITS = frozenset("0123456789abcdefABCDEF")


def magnitude(vector: Sequence[float]) -> float:
    """L2 norm of a vector."""
    return math.sqrt(sum(float(v) * float(v) for v in vector))


def normalize(vector: Sequence[float]) -> List[float]:
    """
    Project a vector to unit length.

    A zero vector is divided by MIN_MAGNITUDE instead of zero, so it stays a
    zero vector.
    """
    mag = magnitude(vector)
    divisor = mag if mag != 0 else MIN_MAGNITUDE
    return [float(v) / divisor for v in vector]


class BinaryQuantizer:
    """
    Converts vectors of a fixed dimensionality to sign-bit hex codes.

    Example:
        >>> q = BinaryQuantizer(8)
        >>> q.to_binary_code([1, -1, 1, -1, 1, -1, 1, -1])
        'AA'
        >>> q.decode("2A")
        '00101010'
    """

    def __init__(self, dimensions: int):
        """
        Args:
            dimensions: Vector dimensionality; must be a positive multiple of 4

        Raises:
            ValidationError: If dimensions cannot be packed into whole nibbles
        """
        if isinstance(dimensions, bool) or not isinstance(dimensions, int):
            raise ValidationError(f"dimensions must be an integer, got {dimensions!r}")
        if dimensions <= 0 or dimensions % 4 != 0:
            raise ValidationError(
                f"dimensions must be a positive multiple of 4, got {dimensions}"
            )
        self.dimensions = dimensions
        self.code_length = dimensions // 4

    def to_binary_code(self, vector: Sequence[float]) -> str:
        """
        Quantize a vector to its hex sign code.

        Raises:
            DimensionMismatchError: If the vector length is not ``dimensions``
        """
        if len(vector) != self.dimensions:
            raise DimensionMismatchError(
                f"Vector has {len(vector)} dimensions, expected {self.dimensions}",
                expected=self.dimensions,
                actual=len(vector),
            )

        bits = "".join("1" if v > 0 else "0" for v in vector)
        return "".join(
            format(int(bits[i:i + 4], 2), "X") for i in range(0, len(bits), 4)
        )

    def decode(self, code: str) -> str:
        """
        Expand a hex code to its bit string (4 zero-padded bits per character).

        Raises:
            DimensionMismatchError: If the code length is not ``dimensions / 4``
            ValidationError: If the code contains non-hex characters
        """
        self._check_code(code)
        return "".join(format(int(char, 16), "04b") for char in code)

    def hamming_distance(self, code_a: str, code_b: str) -> int:
        """
        Count differing bit positions between two hex codes.

        Raises:
            DimensionMismatchError: If either code has the wrong length
            ValidationError: If either code contains non-hex characters
        """
        self._check_code(code_a)
        self._check_code(code_b)
        return bin(int(code_a, 16) ^ int(code_b, 16)).count("1")

    def _check_code(self, code: str) -> None:
        if len(code) != self.code_length:
            raise DimensionMismatchError(
                f"Binary code has {len(code)} characters, expected {self.code_length}",
                expected=self.code_length,
                actual=len(code),
            )
        if not _HEX_DIGITS.issuperset(code):
            raise ValidationError(f"Binary code is not hexadecimal: {code!r}")
