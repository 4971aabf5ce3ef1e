"""
Simulated E3631A Supply

Source Interface stand-in for running the cycler without hardware. Parses
the SCPI subset the cycler emits, drives a NiMHCell from the programmed
channel settings and answers measurement queries with noise and
quantization.

Wiring simulated:
    P25V: charge source (constant current up to its voltage ceiling)
    N25V: discharge sink through the regulator (sinks its current setting)
    P6V:  4-wire sense; floats to its ceiling when no cell is present
"""

import re
import time
import logging
import numpy as np
from typing import Callable, Optional

from nimh_cycler.communication import scpi
from nimh_cycler.plant.cell_model import NiMHCell


class SimulatedClock:
    """Virtual monotonic clock; sleep() advances time instantly."""

    def __init__(self, start_s: float = 0.0):
        self._now = start_s

    def __call__(self) -> float:
        return self._now

    def sleep(self, seconds: float):
        if seconds > 0:
            self._now += seconds


class SimulatedSupply:
    """
    Simulated triple-output supply with a cell attached.

    Parameters:
        cell: NiMHCell on the leads, None for an empty holder
        clock: Time source in seconds (default: time.monotonic)
        sleep: Called with query_latency_s for each query (optional)
        query_latency_s: Round-trip time per query
        voltage_noise_v: Std dev of voltage readings
        current_noise_a: Std dev of current readings
        seed: Random seed for reproducibility
    """

    IDENTITY = "HEWLETT-PACKARD,E3631A,0,2.1-5.0-1.0"

    # channel: (max volts magnitude, max amps)
    CHANNEL_LIMITS = {
        'P6V': (6.18, 5.15),
        'P25V': (25.75, 1.03),
        'N25V': (25.75, 1.03),
    }

    VOLTAGE_RESOLUTION_V = 0.0001
    CURRENT_RESOLUTION_A = 0.0001

    _APPL_PATTERN = re.compile(r'^APPL\s+(\w+)\s*,\s*([^,]+)\s*,\s*(.+)$', re.IGNORECASE)
    _MEAS_PATTERN = re.compile(r'^MEAS:(VOLT|CURR)\?\s*(\w+)?$', re.IGNORECASE)
    _DISP_TEXT_PATTERN = re.compile(r'^DISP:TEXT\s+"(.*)"$', re.IGNORECASE)

    def __init__(
        self,
        cell: Optional[NiMHCell] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Optional[Callable[[float], None]] = None,
        query_latency_s: float = 0.0,
        voltage_noise_v: float = 0.0001,
        current_noise_a: float = 0.0005,
        seed: Optional[int] = None
    ):
        self._cell = cell
        self._clock = clock
        self._sleep = sleep
        self._query_latency_s = query_latency_s
        self._voltage_noise_v = voltage_noise_v
        self._current_noise_a = current_noise_a
        self._rng = np.random.RandomState(seed)

        self._last_update_s = clock()
        self._open = False
        self.commands = []
        self.display_text: Optional[str] = None
        self._reset_state()

        self._logger = logging.getLogger(__name__)

    def _reset_state(self):
        self.channels = {name: [0.0, 0.0] for name in self.CHANNEL_LIMITS}
        self.output_on = False
        self.remote = False
        self.display_text = None

    # Source Interface

    def open(self) -> bool:
        self._open = True
        return True

    def close(self):
        self._open = False

    @property
    def is_open(self) -> bool:
        return self._open

    def flush_input(self) -> str:
        return ''

    def send(self, command: str):
        if scpi.is_query(command):
            self.query(command)
            return
        self._open = True
        self._advance()
        for part in command.split(';'):
            self._execute(part.strip())

    def query(self, command: str) -> str:
        self._open = True
        if self._sleep is not None and self._query_latency_s > 0:
            self._sleep(self._query_latency_s)
        self._advance()
        self.commands.append(command)
        return self._answer(command.strip())

    def get_statistics(self) -> dict:
        return {'command_count': len(self.commands)}

    # Cell handling

    @property
    def cell(self) -> Optional[NiMHCell]:
        return self._cell

    def insert_cell(self, cell: NiMHCell):
        self._advance()
        self._cell = cell

    def remove_cell(self) -> Optional[NiMHCell]:
        self._advance()
        cell, self._cell = self._cell, None
        return cell

    def cell_current(self) -> float:
        """Current into the cell (A) for the present channel settings."""
        if self._cell is None or not self.output_on:
            return 0.0

        v_ceiling, i_charge = self.channels['P25V']
        _, i_sink = self.channels['N25V']

        if i_charge > 0:
            # Constant current until the terminal voltage would pass the ceiling
            if self._cell.get_terminal_voltage(i_charge) > v_ceiling:
                headroom = v_ceiling - self._cell.get_terminal_voltage(0.0)
                i_charge = float(np.clip(headroom / self._cell.get_internal_resistance(), 0.0, i_charge))

        if i_sink > 0 and self._cell.get_terminal_voltage(-i_sink) <= 0.0:
            # Cell fully collapsed: the sink cannot pull more than the cell gives
            i_sink = 0.0

        return i_charge - i_sink

    def _advance(self):
        now = self._clock()
        dt_ms = (now - self._last_update_s) * 1000.0
        self._last_update_s = now
        if self._cell is not None:
            self._cell.update(self.cell_current() * 1000.0, max(dt_ms, 0.0))

    # Command execution

    def _execute(self, command: str):
        if not command:
            return
        self.commands.append(command)
        upper = command.upper()

        match = self._APPL_PATTERN.match(command)
        if match:
            self._apply(match.group(1).upper(), match.group(2), match.group(3))
        elif upper == scpi.RESET:
            self._reset_state()
        elif upper == scpi.REMOTE:
            self.remote = True
        elif upper == scpi.OUTPUT_ON:
            self.output_on = True
        elif upper == scpi.OUTPUT_OFF:
            self.output_on = False
        elif upper == scpi.DISPLAY_OFF.upper():
            self.display_text = None
        else:
            disp = self._DISP_TEXT_PATTERN.match(command)
            if disp:
                self.display_text = disp.group(1)
            else:
                self._logger.warning(f"Unsupported command: {command}")

    def _apply(self, channel: str, volts_text: str, amps_text: str):
        if channel not in self.CHANNEL_LIMITS:
            self._logger.warning(f"Unknown channel: {channel}")
            return
        v_limit, i_limit = self.CHANNEL_LIMITS[channel]
        volts = scpi.parse_number(volts_text)
        amps = scpi.parse_number(amps_text)
        self.channels[channel] = [
            float(np.clip(volts, -v_limit, v_limit)),
            float(np.clip(amps, 0.0, i_limit)),
        ]
        # Settle the cell onto the new current immediately
        if self._cell is not None:
            self._cell.update(self.cell_current() * 1000.0, 0.0)

    def _quantize(self, value: float, resolution: float) -> float:
        return round(value / resolution) * resolution

    def _answer(self, command: str) -> str:
        if command.upper() == scpi.IDENTIFY:
            return self.IDENTITY

        match = self._MEAS_PATTERN.match(command)
        if not match:
            self._logger.warning(f"Unsupported query: {command}")
            return ''

        quantity = match.group(1).upper()
        channel = (match.group(2) or 'P6V').upper()

        if quantity == 'VOLT':
            if self._cell is None or not self.output_on:
                value = self.channels['P6V'][0] if self.output_on else 0.0
            else:
                value = self._cell.get_terminal_voltage(self.cell_current())
                value += self._rng.normal(0.0, self._voltage_noise_v)
            return f"{self._quantize(value, self.VOLTAGE_RESOLUTION_V):.4f}"

        i_cell = self.cell_current()
        if channel == 'P25V':
            value = max(i_cell, 0.0)
        elif channel == 'N25V':
            value = max(-i_cell, 0.0)
        else:
            value = 0.0
        value = abs(value + self._rng.normal(0.0, self._current_noise_a))
        return f"{self._quantize(value, self.CURRENT_RESOLUTION_A):.4f}"
