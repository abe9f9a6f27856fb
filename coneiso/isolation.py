"""Cone isolation of physics candidates.

For every candidate the transverse momenta of nearby isolation objects
(tracks, calorimeter deposits, particle-flow candidates) are summed inside a
cone of radius ``DeltaRMax``, the sum is corrected for pileup and one of the
configured policies decides whether the candidate is kept.

Per chunk:
    1) Select isolation objects above ``PTMin`` (once, shared by all candidates).
    2) Look up the ambient density rho for each candidate's |eta|.
    3) Accumulate the four cone sums (all, charged, charged pileup, neutral).
    4) Build the delta-beta and rho corrected sums and their ratios to pT.
    5) Attach the six result fields and keep the candidates passing the cut.

All collections are jagged ``events x objects`` arrays; nothing is shared
between events and nothing is remembered between calls.
"""

import logging
from collections.abc import Mapping

import awkward as ak
import numpy as np

from coneiso.isolation_config import BARREL_ENDCAP_ETA, IsolationConfig, IsolationPolicy
from coneiso.objects import select_isolation_objects

logger = logging.getLogger(__name__)

# Fields written onto every processed candidate.
RESULT_FIELDS = (
    "ratioDBeta",
    "ratioRhoCorr",
    "sumPtCharged",
    "sumPtNeutral",
    "sumPtChargedPU",
    "sumPtAll",
)

# Warn-once cache (per worker process) to avoid log spam.
_WARN_ONCE: set[str] = set()


def _warn_once(key, msg, *args):
    if key not in _WARN_ONCE:
        _WARN_ONCE.add(key)
        logger.warning(msg, *args)


def rho_lookup(abs_eta, rho_bins=None):
    """Return the density rho for each candidate |eta|.

    A bin matches when ``edgeLow <= |eta| < edgeHigh``.  If several bins
    match, the last one in collection order wins.  Candidates without a
    matching bin, and every candidate when *rho_bins* is None, get 0.0.
    """
    if rho_bins is None:
        return ak.zeros_like(abs_eta, dtype=np.float64)

    pairs = ak.cartesian({"eta": abs_eta, "bin": rho_bins}, axis=1, nested=True)
    in_bin = (pairs.eta >= pairs.bin.edgeLow) & (pairs.eta < pairs.bin.edgeHigh)

    index = ak.local_index(in_bin, axis=-1)
    last = ak.fill_none(ak.max(ak.where(in_bin, index, -1), axis=-1), -1)
    picked = ak.where(index == last, pairs.bin.pt, 0.0)
    return ak.sum(picked, axis=-1)


def cone_sums(candidates, isolation_objects, delta_r_max):
    """Sum isolation-object pT inside the cone of each candidate.

    Returns a dict of jagged arrays aligned with *candidates*:
      - ``sumPtAll``: every object in the cone
      - ``sumPtCharged``: charged, not pileup
      - ``sumPtChargedPU``: charged, pileup
      - ``sumPtNeutral``: neutral (pileup flag ignored)

    Objects sharing the candidate's ``uid`` are never counted, even at
    Delta R = 0.  The cone edge is inclusive.
    """
    pairs = ak.cartesian({"cand": candidates, "iso": isolation_objects}, axis=1, nested=True)
    in_cone = (pairs.cand.delta_r(pairs.iso) <= delta_r_max) & (pairs.cand.uid != pairs.iso.uid)

    iso = pairs.iso[in_cone]
    pt = iso.pt
    charged = iso.charge != 0

    return {
        "sumPtAll": ak.sum(pt, axis=-1),
        "sumPtCharged": ak.sum(pt[charged & ~iso.isPU], axis=-1),
        "sumPtChargedPU": ak.sum(pt[charged & iso.isPU], axis=-1),
        "sumPtNeutral": ak.sum(pt[~charged], axis=-1),
    }


def pileup_corrections(sums, candidate_pt, rho, delta_r_max):
    """Delta-beta and rho corrected isolation sums and their ratios to pT.

    delta-beta: half of the charged-pileup pT is assumed to leak into the
    neutral sum.  rho: the expected pileup is ``rho * pi * DeltaRMax^2``.
    Both neutral remainders are floored at zero, and so is rho.  A
    non-positive candidate pT is not guarded against.
    """
    charged = sums["sumPtCharged"]
    neutral = sums["sumPtNeutral"]
    area = np.pi * delta_r_max * delta_r_max

    sum_dbeta = charged + np.maximum(neutral - 0.5 * sums["sumPtChargedPU"], 0.0)
    sum_rho_corr = charged + np.maximum(neutral - np.maximum(rho, 0.0) * area, 0.0)

    return {
        "sumDBeta": sum_dbeta,
        "sumRhoCorr": sum_rho_corr,
        "ratioDBeta": sum_dbeta / candidate_pt,
        "ratioRhoCorr": sum_rho_corr / candidate_pt,
    }


def iso_cut(candidate_pt, candidate_eta, config: IsolationConfig):
    """pT-dependent ID cut: barrel for |eta| < 1.488, endcap otherwise."""
    barrel = config.iso_p0 + config.iso_p1 * candidate_pt
    endcap = config.iso_p0_ee + config.iso_p1_ee * candidate_pt
    return ak.where(np.abs(candidate_eta) < BARREL_ENDCAP_ETA, barrel, endcap)


def passes_isolation(active_sum, active_ratio, cut, config: IsolationConfig):
    """Boolean mask of candidates surviving the configured policy.

    The rejection tests are checked in order, the first applicable one wins:
      1. absolute sum only:  reject if sum > PTSumMax
      2. loose ID only:      reject if sum > IsoCut
      3. absolute sum off:   reject if ratio > PTRatioMax
    A loose-ID candidate passing its cut therefore still faces the ratio
    test, and with both switches on no test applies.
    """
    policy = config.policy
    ratio_fail = active_ratio > config.pt_ratio_max

    if policy is IsolationPolicy.ABSOLUTE_SUM:
        return ~(active_sum > config.pt_sum_max)
    if policy is IsolationPolicy.LOOSE_ID:
        return ~((active_sum > cut) | ratio_fail)
    if policy is IsolationPolicy.RELATIVE:
        return ~ratio_fail
    return ak.ones_like(active_sum, dtype=np.bool_)


def annotate_candidates(candidates, results):
    """Attach the six isolation result fields to *candidates*."""
    for name in RESULT_FIELDS:
        candidates = ak.with_field(candidates, results[name], name)
    return candidates


class Isolation:
    """One configured isolation module.

    Parameters
    - `config`: an :class:`IsolationConfig` (defaults when omitted).

    The instance holds nothing but the configuration, so it can be reused
    across chunks and shipped to workers.
    """

    def __init__(self, config: IsolationConfig | None = None):
        self.config = config if config is not None else IsolationConfig()
        cfg = self.config
        logger.info("Iso_p0: %s  Iso_p1: %s", cfg.iso_p0, cfg.iso_p1)
        logger.info("Iso_p0_ee: %s  Iso_p1_ee: %s", cfg.iso_p0_ee, cfg.iso_p1_ee)
        logger.info("UsePTSum: %s  UseLooseID: %s  UseRhoCorrection: %s",
                    cfg.use_pt_sum, cfg.use_loose_id, cfg.use_rho_correction)
        if cfg.policy is IsolationPolicy.UNCUT:
            _warn_once(
                "policy_uncut",
                "Both UsePTSum and UseLooseID are enabled; no isolation cut will be applied.",
            )

    def compute(self, candidates, isolation_objects, rho_bins=None):
        """Return ``(annotated_candidates, pass_mask)`` for all candidates.

        *isolation_objects* must already be filtered by ``PTMin``.
        """
        cfg = self.config
        rho = rho_lookup(np.abs(candidates.eta), rho_bins)
        sums = cone_sums(candidates, isolation_objects, cfg.delta_r_max)
        corrected = pileup_corrections(sums, candidates.pt, rho, cfg.delta_r_max)

        annotated = annotate_candidates(candidates, {**sums, **corrected})

        if cfg.use_rho_correction:
            active_sum, active_ratio = corrected["sumRhoCorr"], corrected["ratioRhoCorr"]
        else:
            active_sum, active_ratio = corrected["sumDBeta"], corrected["ratioDBeta"]

        cut = iso_cut(candidates.pt, candidates.eta, cfg)
        mask = passes_isolation(active_sum, active_ratio, cut, cfg)
        return annotated, mask

    def isolate(self, candidates, isolation_objects, rho_bins=None):
        """Annotate *candidates* and return the isolated ones, in input order."""
        selected = select_isolation_objects(isolation_objects, self.config.pt_min)
        annotated, mask = self.compute(candidates, selected, rho_bins)
        isolated = annotated[mask]
        logger.debug(
            "Isolation: %d / %d candidates kept (policy=%s)",
            ak.sum(ak.num(isolated, axis=1)),
            ak.sum(ak.num(candidates, axis=1)),
            self.config.policy.value,
        )
        return isolated

    def process(self, collections: Mapping):
        """Run on the bound collections of *collections*; return ``{OutputArray: isolated}``.

        ``IsolationInputArray`` and ``CandidateInputArray`` are required.  A
        configured ``RhoInputArray`` that is not present is treated as absent
        (rho = 0).
        """
        cfg = self.config
        for name in (cfg.candidate_input_array, cfg.isolation_input_array):
            if name not in collections:
                raise KeyError(f"Input collection '{name}' not found. Available: {sorted(collections)}")

        rho_bins = None
        if cfg.rho_input_array is not None:
            rho_bins = collections.get(cfg.rho_input_array)
            if rho_bins is None:
                _warn_once(
                    f"missing_rho::{cfg.rho_input_array}",
                    "Rho collection '%s' not found; using rho = 0.",
                    cfg.rho_input_array,
                )

        isolated = self.isolate(
            collections[cfg.candidate_input_array],
            collections[cfg.isolation_input_array],
            rho_bins,
        )
        return {cfg.output_array: isolated}
