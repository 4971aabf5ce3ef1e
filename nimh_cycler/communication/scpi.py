"""
SCPI Command Vocabulary for E3631A-class supplies

Text commands are ASCII and newline-terminated by the transport. Any command
containing '?' is a query and expects one line back.
"""

import re


IDENTIFY = "*IDN?"
RESET = "*RST"
REMOTE = "SYST:REM"
OUTPUT_ON = "OUTP ON"
OUTPUT_OFF = "OUTP OFF"
DISPLAY_OFF = "DISP Off"

_NUMBER_PATTERN = re.compile(r'^\s*[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?')


def is_query(command: str) -> bool:
    """Return True if the command expects a response."""
    return '?' in command


def apply(channel: str, volts: float, amps: float) -> str:
    """Program channel voltage ceiling and current limit."""
    return f"APPL {channel},{volts:.3f},{amps:.3f}"


def measure_voltage(channel: str) -> str:
    return f"MEAS:VOLT? {channel}"


def measure_current(channel: str) -> str:
    return f"MEAS:CURR? {channel}"


def display_text(text: str) -> str:
    """Show text on the front panel (quotes in text are dropped)."""
    return f'DISP:TEXT "{text.replace(chr(34), "")}"'


def parse_number(response: str) -> float:
    """
    Parse a numeric instrument response.

    Parses the leading number like C atof: trailing garbage is ignored and an
    empty or unparseable response yields 0.0 instead of raising.

    Args:
        response: Raw response text (may be empty)

    Returns:
        Parsed value, 0.0 on failure
    """
    if not response:
        return 0.0
    match = _NUMBER_PATTERN.match(response)
    if match is None:
        return 0.0
    try:
        return float(match.group(0))
    except ValueError:
        return 0.0
