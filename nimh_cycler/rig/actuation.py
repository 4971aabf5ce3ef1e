"""
Actuation Translator

The rig has no bidirectional current source. P25V sources charge current;
N25V sinks discharge current through an LM7805 wired as a "zener", whose
forward drop is pre-compensated by programming N25V to a fixed negative
offset voltage.
"""

import logging

from nimh_cycler.communication import scpi


class CommandTarget:
    """Instantaneous (comply_voltage, signed_amps) pair, positive = charging."""

    __slots__ = ('comply_voltage', 'signed_amps')

    def __init__(self, comply_voltage: float, signed_amps: float):
        self.comply_voltage = comply_voltage
        self.signed_amps = signed_amps

    def __eq__(self, other):
        if not isinstance(other, CommandTarget):
            return NotImplemented
        return (self.comply_voltage, self.signed_amps) == (other.comply_voltage, other.signed_amps)

    def __repr__(self):
        return f"CommandTarget({self.comply_voltage:.3f} V, {self.signed_amps:+.3f} A)"


class ActuationTranslator:
    """
    Maps a desired (ceiling, signed current) onto the charge and sink channels.

    Each call issues exactly two APPL commands. The channel being disabled is
    always programmed first, so the two channels never carry current at the
    same time while switching direction.

    Parameters:
        source: Source Interface (send/query)
        i_max: Channel current limit in A
        regulator_offset_v: Sink channel voltage compensating the regulator drop
        charge_channel: Channel name sourcing charge current
        discharge_channel: Channel name sinking discharge current
    """

    def __init__(
        self,
        source,
        i_max: float = 1.0,
        regulator_offset_v: float = -4.6,
        charge_channel: str = 'P25V',
        discharge_channel: str = 'N25V'
    ):
        self._source = source
        self._i_max = i_max
        self._regulator_offset_v = regulator_offset_v
        self._charge_channel = charge_channel
        self._discharge_channel = discharge_channel
        self._last_target = None
        self._logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, source, rig_config: dict) -> 'ActuationTranslator':
        return cls(
            source,
            i_max=rig_config['i_max'],
            regulator_offset_v=rig_config['regulator_offset_v'],
            charge_channel=rig_config['charge_channel'],
            discharge_channel=rig_config['discharge_channel']
        )

    @property
    def last_target(self):
        return self._last_target

    def commands_for(self, volts_ceiling: float, signed_amps: float) -> list:
        """
        Build the two APPL commands for a target, in send order.

        Pure function of the target; the current's sign alone picks the
        active channel.
        """
        amps = max(-self._i_max, min(self._i_max, signed_amps))

        if amps >= 0:
            return [
                scpi.apply(self._discharge_channel, 0.0, 0.0),
                scpi.apply(self._charge_channel, volts_ceiling, amps),
            ]
        return [
            scpi.apply(self._charge_channel, volts_ceiling, 0.0),
            scpi.apply(self._discharge_channel, self._regulator_offset_v, -amps),
        ]

    def apply_target(self, volts_ceiling: float, signed_amps: float):
        """
        Program both channels for the requested target. No readback.

        Args:
            volts_ceiling: Charge channel voltage ceiling (V)
            signed_amps: Desired cell current (A), positive = charge
        """
        if abs(signed_amps) > self._i_max:
            self._logger.warning(
                f"Requested {signed_amps:+.3f} A exceeds channel limit, clamped to {self._i_max:.3f} A"
            )

        for command in self.commands_for(volts_ceiling, signed_amps):
            self._source.send(command)

        self._last_target = CommandTarget(volts_ceiling, signed_amps)
