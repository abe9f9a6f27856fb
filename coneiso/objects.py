"""Builders for isolation-ready collections.

Every collection is a jagged ``events x objects`` awkward array of
``PtEtaPhiMLorentzVector`` records so that ``delta_r`` is available.  The
isolation core additionally reads ``charge``, ``isPU`` and ``uid``; the
helpers here fill those in when the source does not provide them.
"""

import itertools
import logging

import awkward as ak
import numpy as np
from coffea.nanoevents.methods import vector

ak.behavior.update(vector.behavior)
logger = logging.getLogger(__name__)

CANDIDATE_NAME = "PtEtaPhiMLorentzVector"

# Generated uids are local_index + ordinal * _UID_STRIDE, so collections read
# under different names never share a uid.
_UID_STRIDE = 1 << 32

# Ordinals handed out when the caller gives none. They start well above the
# small explicit ordinals used by the readers so the two ranges never meet.
_AUTO_ORDINALS = itertools.count(1 << 16)


def _jagged(values, dtype):
    return ak.values_astype(ak.Array(values), dtype)


def ensure_isolation_fields(collection, ordinal=None):
    """Return *collection* with ``mass``, ``charge``, ``isPU`` and ``uid`` present.

    Missing fields are filled with ``mass=0``, ``charge=0``, ``isPU=False``
    and a generated ``uid``.  Two collections built with the same *ordinal*
    get the same uids for the same positions, which is what makes a
    candidate recognise itself inside an isolation collection read from the
    same source.  Without an *ordinal* a fresh one is allocated, so the uids
    never coincide with those of any other collection.
    """
    # Fields are added to a nameless record so the vector behavior only sees
    # the finished coordinates.
    collection = ak.with_name(collection, None)
    fields = ak.fields(collection)
    if "mass" not in fields:
        collection = ak.with_field(collection, ak.zeros_like(collection.pt), "mass")
    if "charge" not in fields:
        collection = ak.with_field(collection, ak.zeros_like(collection.pt, dtype=np.int32), "charge")
    if "isPU" not in fields:
        collection = ak.with_field(collection, ak.zeros_like(collection.pt, dtype=np.bool_), "isPU")
    if "uid" not in fields:
        if ordinal is None:
            ordinal = next(_AUTO_ORDINALS)
        uid = ak.local_index(collection.pt, axis=-1) + ordinal * _UID_STRIDE
        collection = ak.with_field(collection, uid, "uid")
    return ak.with_name(collection, CANDIDATE_NAME, behavior=vector.behavior)


def make_collection(pt, eta, phi, mass=None, charge=None, is_pu=None, uid=None, *, ordinal=None):
    """Build a candidate collection from per-event lists (one inner list per event)."""
    fields = {
        "pt": _jagged(pt, np.float64),
        "eta": _jagged(eta, np.float64),
        "phi": _jagged(phi, np.float64),
    }
    if mass is not None:
        fields["mass"] = _jagged(mass, np.float64)
    else:
        fields["mass"] = ak.zeros_like(fields["pt"])
    if charge is not None:
        fields["charge"] = _jagged(charge, np.int32)
    if is_pu is not None:
        fields["isPU"] = _jagged(is_pu, np.bool_)
    if uid is not None:
        fields["uid"] = _jagged(uid, np.int64)

    return ensure_isolation_fields(ak.zip(fields), ordinal)


def make_rho_bins(rho, edge_low, edge_high):
    """Build a density collection: ``pt`` holds rho, valid for ``edgeLow <= |eta| < edgeHigh``."""
    return ak.zip(
        {
            "pt": _jagged(rho, np.float64),
            "edgeLow": _jagged(edge_low, np.float64),
            "edgeHigh": _jagged(edge_high, np.float64),
        }
    )


def select_isolation_objects(objects, pt_min):
    """Keep isolation objects with ``pt >= pt_min`` (source order preserved)."""
    return objects[objects.pt >= pt_min]
