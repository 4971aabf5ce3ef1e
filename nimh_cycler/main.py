"""
NiMH cycler entry point

Wires the supply transport, rig translators and control loop together and
serves cells until interrupted:
- Serial E3631A (default) or a simulated supply with a virtual clock
- YAML configuration with CLI overrides
- Ctrl+C leaves both cell channels at zero
"""

import sys
import time
import logging
import argparse
from typing import Callable, Optional

from nimh_cycler.config import load_config
from nimh_cycler.console import KeyboardMonitor, print_status
from nimh_cycler.communication.serial_source import SerialSource, InstrumentConnectionError
from nimh_cycler.rig.actuation import ActuationTranslator
from nimh_cycler.rig.measurement import MeasurementService
from nimh_cycler.control.resistance import ResistanceEstimator
from nimh_cycler.control.energy import EnergyIntegrator
from nimh_cycler.control.reporting import ReportingLoop
from nimh_cycler.control.phases import PhaseController
from nimh_cycler.control.cycle import CycleDriver
from nimh_cycler.plant.cell_model import NiMHCell
from nimh_cycler.plant.simulated_supply import SimulatedSupply, SimulatedClock


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    formatter = logging.Formatter('%(asctime)s %(name)s %(levelname)s: %(message)s', datefmt="%Y-%m-%d %H:%M:%S")

    rootlog = logging.getLogger()
    rootlog.setLevel(logging.DEBUG if verbose else logging.INFO)

    ch = logging.StreamHandler(sys.stderr)
    ch.setFormatter(formatter)
    rootlog.addHandler(ch)

    if log_file:
        fh = logging.FileHandler(log_file)
        fh.setFormatter(formatter)
        rootlog.addHandler(fh)


def build_driver(
    source,
    config: dict,
    key_source=None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    status_sink: Callable[[str], None] = print_status
) -> CycleDriver:
    """Assemble the control stack around one Source Interface."""
    rig = config['rig']
    reporting_config = config['reporting']

    actuation = ActuationTranslator.from_config(source, rig)
    measurement = MeasurementService.from_config(source, rig)
    estimator = ResistanceEstimator(
        actuation, measurement,
        i_bump=rig['i_bump'],
        max_expected_ohms=rig['max_expected_ohms']
    )
    reporting = ReportingLoop(
        actuation, measurement, estimator, EnergyIntegrator(), source,
        key_source=key_source,
        comply_ohms=rig['comply_ohms'],
        open_circuit_a=rig['open_circuit_a'],
        tick_s=reporting_config['tick_s'],
        toggle_key=reporting_config['toggle_key'],
        clock=clock,
        sleep=sleep,
        status_sink=status_sink
    )
    controller = PhaseController(reporting, actuation, config)
    return CycleDriver(source, actuation, measurement, controller, config, clock=clock, sleep=sleep)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='NiMH cell cycler for E3631A-class supplies')
    parser.add_argument('--config', type=str, default=None,
                       help='YAML configuration file (default: built-in defaults)')
    parser.add_argument('--port', type=str, default=None,
                       help='Serial port (e.g., COM2 or /dev/ttyUSB0)')
    parser.add_argument('--baudrate', type=int, default=None,
                       help='Baud rate (default: 9600)')
    parser.add_argument('--capacity', type=float, default=None,
                       help='Nominal cell capacity in Ah (default: 3.5)')
    parser.add_argument('--vmax', type=float, default=None,
                       help='Charge ceiling voltage (default: 1.7)')
    parser.add_argument('--max-cycles', type=int, default=None,
                       help='Cycles per cell, 0 = until removed')
    parser.add_argument('--simulate', action='store_true',
                       help='Run against a simulated supply and cell in virtual time')
    parser.add_argument('--verbose', action='store_true',
                       help='Enable verbose logging')
    parser.add_argument('--log-file', type=str, default=None,
                       help='Also write the log to this file')
    return parser.parse_args(argv)


def overrides_from_args(args) -> dict:
    overrides = {'serial': {}, 'cell': {}, 'cycling': {}}
    if args.port is not None:
        overrides['serial']['port'] = args.port
    if args.baudrate is not None:
        overrides['serial']['baudrate'] = args.baudrate
    if args.capacity is not None:
        overrides['cell']['capacity_ah'] = args.capacity
    if args.vmax is not None:
        overrides['cell']['v_max'] = args.vmax
    if args.max_cycles is not None:
        overrides['cycling']['max_cycles'] = args.max_cycles
    if args.simulate:
        overrides['cycling'].setdefault('max_cycles', 1)
        overrides['cycling']['max_cells'] = 1
    return overrides


def main(argv=None) -> int:
    """Main cycling loop."""
    args = parse_args(argv)
    setup_logging(args.verbose, args.log_file)

    try:
        config = load_config(args.config, overrides_from_args(args))
    except (OSError, ValueError) as e:
        print(f"[ERROR] {e}")
        return 1

    print("\n" + "=" * 80)
    print("NiMH Cycler")
    print("=" * 80)
    print("Configuration:")
    print(f"  Supply: {'simulated' if args.simulate else config['serial']['port']}")
    print(f"  Capacity: {config['cell']['capacity_ah']} Ah")
    print(f"  Charge ceiling: {config['cell']['v_max']} V")
    print(f"  Max cycles per cell: {config['cycling']['max_cycles'] or 'unlimited'}")
    print(f"  Toggle key: '{config['reporting']['toggle_key']}' + Enter, digit + Enter = display seconds")
    print("=" * 80 + "\n")
    print("Vext,dVext(mV),ISR(mOhm),Vint,mAh,mWh")

    if args.simulate:
        clock = SimulatedClock()
        cell = NiMHCell(capacity_ah=config['cell']['capacity_ah'], initial_soc=0.5)
        source = SimulatedSupply(cell, clock=clock, sleep=clock.sleep, query_latency_s=0.05, seed=42)
        driver = build_driver(source, config, clock=clock, sleep=clock.sleep)
        keyboard = None
    else:
        source = SerialSource.from_config(config['serial'], verbose=args.verbose)
        if not source.open():
            print(f"[ERROR] Cannot open {config['serial']['port']}: {source.get_statistics()['last_error']}")
            return 2
        keyboard = KeyboardMonitor()
        keyboard.start()
        driver = build_driver(source, config, key_source=keyboard)

    try:
        driver.bring_up()
        driver.run(insert_timeout_s=0.0 if args.simulate else None)

    except InstrumentConnectionError as e:
        print(f"[ERROR] Instrument connection lost: {e}")
        return 2

    except KeyboardInterrupt:
        print("\n\nCycling interrupted by user")

    finally:
        if source.is_open:
            driver.safe_off()
        if keyboard is not None:
            keyboard.stop()
        source.close()

        stats = source.get_statistics()
        print("\nTransport Statistics:")
        for key, value in stats.items():
            print(f"  {key}: {value}")

    return 0


if __name__ == '__main__':
    sys.exit(main())
