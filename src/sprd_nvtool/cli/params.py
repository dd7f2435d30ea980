"""
Shared Click Parameter Types
============================
"""

from typing import Optional

import click


class NumberType(click.ParamType):
    """
    Click parameter type for addresses, sizes and NV ids.

    Accepts decimal or prefixed literals (0x90000001, 0o17, 0b101),
    optionally with underscores. Bare hex without a prefix is rejected so
    that "10" always means ten.
    """
    name = "number"

    def __init__(self, maximum: int = 0xFFFFFFFF):
        self.maximum = maximum

    def convert(self, value, param: Optional[click.Parameter],
                ctx: Optional[click.Context]) -> int:
        """Convert string to int."""
        if isinstance(value, int):
            number = value
        else:
            try:
                number = int(str(value).strip(), 0)
            except ValueError:
                self.fail(f"'{value}' is not a valid number (use 0x prefix for hex)", param, ctx)

        if not 0 <= number <= self.maximum:
            self.fail(f"{value} is out of range (0 to 0x{self.maximum:X})", param, ctx)
        return number


ADDRESS = NumberType()
NV_ID = NumberType(maximum=0xFFFF)
