"""Coffea processor running cone isolation on NanoEvents chunks.

The bound collections of the :class:`IsolationConfig` are looked up as event
attributes (``events.Electron``, ``events.EFlow``, ...).  Missing
``charge``/``isPU``/``uid`` fields are filled per collection name, so a
candidate collection that is also the isolation collection still excludes
itself.

Expected ``events.metadata`` keys (typical):
  - ``dataset``: dataset identifier string (falls back to ``sample``)
"""

import logging

import awkward as ak
from coffea import processor

from coneiso.isolation import Isolation
from coneiso.isolation_config import IsolationConfig
from coneiso.objects import ensure_isolation_fields

logger = logging.getLogger(__name__)


class IsolationProcessor(processor.ProcessorABC):
    """Apply one isolation module per chunk and count the survivors.

    Output per dataset: ``n_candidates`` and ``n_isolated`` (ints, summed
    across chunks by the coffea accumulator).
    """

    def __init__(self, config: IsolationConfig | None = None):
        self._isolation = Isolation(config)

    @property
    def config(self):
        return self._isolation.config

    def collections_from_events(self, events):
        """Return ``{name: collection}`` for the bound collections present in *events*."""
        cfg = self.config
        names = [cfg.candidate_input_array, cfg.isolation_input_array]
        if cfg.rho_input_array is not None:
            names.append(cfg.rho_input_array)

        collections = {}
        ordinals = {}
        for name in names:
            if name in collections or not hasattr(events, name):
                continue
            collection = getattr(events, name)
            if name == cfg.rho_input_array:
                collections[name] = collection
            else:
                ordinal = ordinals.setdefault(name, len(ordinals))
                collections[name] = ensure_isolation_fields(collection, ordinal)
        return collections

    def process(self, events):
        metadata = getattr(events, "metadata", None) or {}
        dataset = metadata.get("dataset") or metadata.get("sample") or "unknown"

        collections = self.collections_from_events(events)
        output = self._isolation.process(collections)
        isolated = output[self.config.output_array]

        candidates = collections[self.config.candidate_input_array]
        counts = {
            "n_candidates": int(ak.sum(ak.num(candidates, axis=1))),
            "n_isolated": int(ak.sum(ak.num(isolated, axis=1))),
        }
        logger.debug("%s: %d / %d candidates isolated", dataset, counts["n_isolated"], counts["n_candidates"])
        return {dataset: counts}

    def postprocess(self, accumulator):
        return accumulator
