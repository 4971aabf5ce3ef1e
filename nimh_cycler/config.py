"""
Cycler Configuration

Loads rig/cell/phase parameters from YAML and merges them over built-in
defaults. The phase thresholds are empirically tuned for NiMH AA/C cells on
an E3631A rig, so every one of them can be overridden per cell.
"""

import copy
import yaml
from typing import Optional, Dict, Tuple


DEFAULT_CONFIG = {
    'serial': {
        'port': 'COM2',
        'baudrate': 9600,
        'bytesize': 8,
        'stopbits': 2,
        'parity': 'N',
        'dsrdtr': True,
        'timeout': 0.2,             # s, 100 ms max readback + margin
        'inter_byte_timeout': 0.05,
        'write_timeout': 1.0,
        'retry_max': 3,
        'retry_backoff': 0.1,
    },
    'rig': {
        'i_max': 1.0,               # A, P25V / N25V limit
        'i_bump': 0.1,              # A, must stay below min discharge current
        'max_expected_ohms': 5.0,
        'comply_ohms': 0.2,         # meter, cable, diode drop from P25V
        'regulator_offset_v': -4.6, # LM7805 "zener" drop at 1 A
        'charge_channel': 'P25V',
        'discharge_channel': 'N25V',
        'sense_channel': 'P6V',
        'sense_volts': 4.4,
        'sense_amps': 0.002,
        'open_circuit_a': 0.004,    # 4 mA max offset
        'insert_voltage_v': 4.3,
        'insert_poll_s': 0.1,
    },
    'cell': {
        'capacity_ah': 3.5,
        'v_max': 1.7,
    },
    'discharge': {
        'c_divisor': 2.0,
        'v_floor': 1.0,
        'report_minutes': 2,
    },
    'recondition': {
        'c_divisor': 20.0,
        'v_floor': 0.4,
        'report_minutes': 5,
    },
    'form_charge': {
        'c_divisor': 10.0,
        'v_internal_min': 1.0,
        'report_minutes': 1,
    },
    'fast_charge': {
        'report_minutes': 1,
        'v_internal_max': 1.6,
        'capacity_limit': 1.1,
        'rise_tolerance_v': 0.0005,
        'drop_v': 0.001,
        'gate_v_internal': 1.45,
        'gate_capacity': 0.7,
        'plateau_minutes': 20,
    },
    'top_off': {
        'c_divisor': 10.0,
        'budget_minutes': 240,
        'report_minutes': 5,
        'capacity_limit': 1.2,
    },
    'reporting': {
        'tick_s': 1.0,
        'initial_display_s': 10,
        'toggle_key': 't',
    },
    'cycling': {
        'max_cycles': 0,            # per cell, 0 = until removed
        'max_cells': 0,             # 0 = forever
    },
}


def merge_config(base: Dict, override: Optional[Dict]) -> Dict:
    """
    Deep-merge override into a copy of base.

    Args:
        base: Default configuration
        override: Partial configuration (nested dicts are merged, scalars replaced)

    Returns:
        New merged dictionary
    """
    merged = copy.deepcopy(base)
    if not override:
        return merged

    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_config(config: Dict) -> Tuple[bool, str]:
    """
    Validate a merged configuration.

    Returns:
        Tuple of (is_valid, error_message)
    """
    for section in DEFAULT_CONFIG:
        if section not in config or not isinstance(config[section], dict):
            return False, f"Missing required section: {section}"

    for section, defaults in DEFAULT_CONFIG.items():
        for key, default in defaults.items():
            value = config[section].get(key)
            if isinstance(default, bool):
                if not isinstance(value, bool):
                    return False, f"{section}.{key} must be true or false, got {value!r}"
            elif isinstance(default, (int, float)):
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    return False, f"{section}.{key} must be a number, got {value!r}"
            elif not isinstance(value, str):
                return False, f"{section}.{key} must be a string, got {value!r}"

    rig = config['rig']
    cell = config['cell']

    if cell['capacity_ah'] <= 0:
        return False, f"capacity_ah must be positive, got {cell['capacity_ah']}"
    if cell['v_max'] <= 0:
        return False, f"v_max must be positive, got {cell['v_max']}"
    if rig['i_max'] <= 0:
        return False, f"i_max must be positive, got {rig['i_max']}"
    if not 0 < rig['i_bump'] < rig['i_max']:
        return False, f"i_bump must be in (0, i_max), got {rig['i_bump']}"
    if rig['max_expected_ohms'] <= 0:
        return False, f"max_expected_ohms must be positive, got {rig['max_expected_ohms']}"
    if rig['open_circuit_a'] < 0:
        return False, f"open_circuit_a must be non-negative, got {rig['open_circuit_a']}"

    for section in ('discharge', 'recondition', 'form_charge', 'top_off'):
        if config[section].get('c_divisor', 1.0) <= 0:
            return False, f"{section}.c_divisor must be positive"

    for section in ('discharge', 'recondition', 'form_charge', 'fast_charge', 'top_off'):
        if config[section]['report_minutes'] <= 0:
            return False, f"{section}.report_minutes must be positive"

    if config['reporting']['tick_s'] <= 0:
        return False, "reporting.tick_s must be positive"
    if len(str(config['reporting']['toggle_key'])) != 1:
        return False, "reporting.toggle_key must be a single character"

    return True, ""


def load_config(yaml_file: Optional[str] = None, overrides: Optional[Dict] = None) -> Dict:
    """
    Load configuration from YAML file (optional) and apply overrides.

    Args:
        yaml_file: Path to YAML file, None for defaults only
        overrides: Nested dict applied last (e.g. from CLI flags)

    Returns:
        Validated configuration dictionary

    Raises:
        ValueError: If the file is not valid YAML or the resulting configuration is invalid
    """
    yaml_data = None
    if yaml_file is not None:
        with open(yaml_file, 'r') as f:
            try:
                yaml_data = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ValueError(f"Cannot parse config file {yaml_file}: {e}") from e
        if not isinstance(yaml_data, dict):
            raise ValueError(f"Config file {yaml_file} must contain a mapping")

    config = merge_config(DEFAULT_CONFIG, yaml_data)
    config = merge_config(config, overrides)

    is_valid, error_msg = validate_config(config)
    if not is_valid:
        raise ValueError(f"Invalid configuration: {error_msg}")

    return config
