"""
Measurement Service

Typed voltage/current readings from the supply. Voltage comes from the
4-wire sense channel; current from whichever channel carries it.
"""

from nimh_cycler.communication import scpi


class MeasurementSample:
    """(terminal_voltage, current_amps) taken at one point in time."""

    __slots__ = ('terminal_voltage', 'current_amps')

    def __init__(self, terminal_voltage: float, current_amps: float):
        self.terminal_voltage = terminal_voltage
        self.current_amps = current_amps

    def __repr__(self):
        return f"MeasurementSample({self.terminal_voltage:.4f} V, {self.current_amps:+.4f} A)"


class MeasurementService:
    """
    Voltage/current queries returning floats.

    Readings fail soft: an empty or garbled response reads as 0.0. A real
    cell never reads exactly 0 V on the sense channel, so callers treat 0.0
    as a transport anomaly rather than a measurement.
    """

    def __init__(
        self,
        source,
        sense_channel: str = 'P6V',
        charge_channel: str = 'P25V',
        discharge_channel: str = 'N25V'
    ):
        self._source = source
        self._sense_channel = sense_channel
        self._charge_channel = charge_channel
        self._discharge_channel = discharge_channel

    @classmethod
    def from_config(cls, source, rig_config: dict) -> 'MeasurementService':
        return cls(
            source,
            sense_channel=rig_config['sense_channel'],
            charge_channel=rig_config['charge_channel'],
            discharge_channel=rig_config['discharge_channel']
        )

    def read_voltage(self) -> float:
        """Terminal voltage from the sense channel (V)."""
        return scpi.parse_number(self._source.query(scpi.measure_voltage(self._sense_channel)))

    def read_current(self, signed_amps_hint: float) -> float:
        """
        Cell current (A), positive = charging.

        Args:
            signed_amps_hint: Commanded current; its sign picks the channel
        """
        if signed_amps_hint >= 0:
            return scpi.parse_number(self._source.query(scpi.measure_current(self._charge_channel)))
        # N25V reports sink current as a positive magnitude
        return -abs(scpi.parse_number(self._source.query(scpi.measure_current(self._discharge_channel))))

    def sample(self, signed_amps_hint: float) -> MeasurementSample:
        return MeasurementSample(self.read_voltage(), self.read_current(signed_amps_hint))
