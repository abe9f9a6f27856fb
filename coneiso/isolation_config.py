"""Configuration for the cone isolation modules.

Values live in ``config.yaml`` next to this module.  The file carries a
``defaults`` block (one entry per configuration key) and a ``modules`` block
with named isolation instances (electron, muon, photon, ...).  Keep this
module free of awkward/coffea imports so it stays cheap to ship to workers.
"""

from __future__ import annotations

import enum
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"

# |eta| boundary between the barrel and endcap ID-cut parametrisations.
BARREL_ENDCAP_ETA = 1.488


def _load_yaml(path):
    try:
        with open(path, "r", encoding="utf-8") as file:
            data = yaml.safe_load(file) or {}
    except (OSError, yaml.YAMLError) as e:
        raise RuntimeError(f"Failed to read isolation config {path}: {e}") from e
    return data


_RAW = _load_yaml(_CONFIG_PATH)

DEFAULTS: dict = dict(_RAW.get("defaults", {}))
MODULES: dict[str, dict] = {name: dict(block or {}) for name, block in _RAW.get("modules", {}).items()}

# config key -> (dataclass attribute, kind)
_KEYS = {
    "DeltaRMax": ("delta_r_max", "float"),
    "Iso_p0": ("iso_p0", "float"),
    "Iso_p1": ("iso_p1", "float"),
    "Iso_p0_ee": ("iso_p0_ee", "float"),
    "Iso_p1_ee": ("iso_p1_ee", "float"),
    "PTRatioMax": ("pt_ratio_max", "float"),
    "PTSumMax": ("pt_sum_max", "float"),
    "UsePTSum": ("use_pt_sum", "bool"),
    "UseLooseID": ("use_loose_id", "bool"),
    "UseRhoCorrection": ("use_rho_correction", "bool"),
    "PTMin": ("pt_min", "float"),
    "IsolationInputArray": ("isolation_input_array", "str"),
    "CandidateInputArray": ("candidate_input_array", "str"),
    "RhoInputArray": ("rho_input_array", "str"),
    "OutputArray": ("output_array", "str"),
}

_TRUE = {"true", "1", "yes", "on"}
_FALSE = {"false", "0", "no", "off"}


class IsolationPolicy(enum.Enum):
    """Which rejection test the cut evaluator applies.

    Derived from the ``UsePTSum`` / ``UseLooseID`` switches.  ``UNCUT`` is the
    case where both switches are set: no rejection test is applied.
    """

    RELATIVE = "relative"
    ABSOLUTE_SUM = "absolute_sum"
    LOOSE_ID = "loose_id"
    UNCUT = "uncut"

    @classmethod
    def from_switches(cls, use_pt_sum: bool, use_loose_id: bool) -> "IsolationPolicy":
        if use_pt_sum and use_loose_id:
            return cls.UNCUT
        if use_pt_sum:
            return cls.ABSOLUTE_SUM
        if use_loose_id:
            return cls.LOOSE_ID
        return cls.RELATIVE


def _as_bool(key, value):
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"Config key '{key}' expects a boolean, got {value!r}")


def _as_float(key, value):
    if isinstance(value, bool):
        raise ValueError(f"Config key '{key}' expects a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Config key '{key}' expects a number, got {value!r}") from e


@dataclass(frozen=True)
class IsolationConfig:
    """Immutable parameters of one isolation module."""

    delta_r_max: float = 0.5
    iso_p0: float = 2.6
    iso_p1: float = 0.0
    iso_p0_ee: float = 2.3
    iso_p1_ee: float = 0.0
    pt_ratio_max: float = 0.1
    pt_sum_max: float = 5.0
    use_pt_sum: bool = False
    use_loose_id: bool = False
    use_rho_correction: bool = True
    pt_min: float = 0.5
    isolation_input_array: str = "Delphes/partons"
    candidate_input_array: str = "Calorimeter/electrons"
    rho_input_array: str | None = None
    output_array: str = "electrons"

    @classmethod
    def from_mapping(cls, params: Mapping | None = None) -> "IsolationConfig":
        """Build a config from string keys (``DeltaRMax``, ``UsePTSum``, ...).

        Keys missing from *params* take their value from ``DEFAULTS``.  An
        empty ``RhoInputArray`` means no density collection is bound.
        """
        merged = {**DEFAULTS, **dict(params or {})}
        unknown = sorted(k for k in merged if k not in _KEYS)
        if unknown:
            raise ValueError(f"Unknown isolation config key(s) {unknown}. Valid keys: {sorted(_KEYS)}")

        kwargs = {}
        for key, value in merged.items():
            attr, kind = _KEYS[key]
            if kind == "float":
                kwargs[attr] = _as_float(key, value)
            elif kind == "bool":
                kwargs[attr] = _as_bool(key, value)
            else:
                kwargs[attr] = "" if value is None else str(value).strip()

        kwargs["rho_input_array"] = kwargs.get("rho_input_array") or None
        return cls(**kwargs)

    @property
    def policy(self) -> IsolationPolicy:
        return IsolationPolicy.from_switches(self.use_pt_sum, self.use_loose_id)


def list_modules() -> list[str]:
    """Return the isolation module names defined in ``config.yaml``."""
    return list(MODULES.keys())


def get_module_config(name, overrides=None):
    """Return the :class:`IsolationConfig` for a named module.

    *overrides* (string keys) are applied on top of the module block.
    """
    block = MODULES.get(name)
    if block is None:
        raise ValueError(f"Unsupported isolation module: {name}. Valid modules: {sorted(MODULES)}")
    return IsolationConfig.from_mapping({**block, **dict(overrides or {})})


def parse_overrides(items):
    """Parse ``KEY=VALUE`` strings (as given on the command line) into a dict."""
    overrides = {}
    for item in items or []:
        key, sep, value = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected KEY=VALUE, got '{item}'")
        overrides[key.strip()] = value.strip()
    return overrides
