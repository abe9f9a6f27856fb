"""Read and write isolation collections from flat ROOT trees with uproot.

Collections follow the NanoAOD branch layout: a collection ``Electron`` is
the set of ``Electron_<field>`` branches of the tree.
"""

from __future__ import annotations

import logging
import os

import awkward as ak
import numpy as np
import uproot

from coneiso.objects import ensure_isolation_fields

logger = logging.getLogger(__name__)

# Fields that mark a collection as rho bins rather than candidates; rho bins
# carry no phi.
_RHO_FIELDS = {"pt", "edgeLow", "edgeHigh"}


def _collection_from_branches(arrays, name):
    prefix = f"{name}_"
    fields = {f[len(prefix):]: arrays[f] for f in arrays.fields if f.startswith(prefix)}
    if not fields:
        return None
    return ak.zip(fields)


def read_collections(path, names, treename="Events", entry_start=None, entry_stop=None):
    """Read the collections *names* from a ROOT file.

    Candidate-like collections get the Lorentz-vector behavior and the
    ``charge``/``isPU``/``uid`` defaults; rho-bin collections (``pt``,
    ``edgeLow``, ``edgeHigh`` and no ``phi``) are returned as plain records.
    Names with no matching branches are left out of the result.
    """
    collections = {}
    ordinal = 0
    try:
        with uproot.open(path) as fin:
            tree = fin[treename]
            for name in dict.fromkeys(names):
                arrays = tree.arrays(
                    filter_name=f"{name}_*",
                    entry_start=entry_start,
                    entry_stop=entry_stop,
                    library="ak",
                )
                collection = _collection_from_branches(arrays, name)
                if collection is None:
                    logger.warning("No branches found for collection '%s' in %s", name, path)
                    continue
                fields = set(ak.fields(collection))
                if _RHO_FIELDS <= fields and "phi" not in fields:
                    collections[name] = collection
                else:
                    collections[name] = ensure_isolation_fields(collection, ordinal)
                    ordinal += 1
                logger.info("Read %s: %d objects", name, ak.sum(ak.num(collection, axis=1)))
    except (OSError, KeyError, ValueError) as e:
        raise RuntimeError(f"Failed to read collections from {path}: {e}") from e
    return collections


def write_collection(path, name, collection, treename="Events"):
    """Write *collection* as ``<name>_<field>`` branches of a new TTree.

    Each branch gets its own ``n<name>_<field>`` counter so no counter is
    shared between branches.
    """
    branch_types = {}
    data = {}
    for field in ak.fields(collection):
        values = ak.without_parameters(collection[field])
        inner_dt = ak.to_numpy(ak.flatten(values, axis=None)).dtype
        if inner_dt == np.dtype(object):
            raise ValueError(f"Field '{field}' of '{name}' is not a flat numeric column")
        branch = f"{name}_{field}"
        branch_types[branch] = "var * " + str(inner_dt)
        data[branch] = values

    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    try:
        with uproot.recreate(path) as fout:
            fout.mktree(treename, branch_types)
            fout[treename].extend(data)
    except OSError as e:
        raise RuntimeError(f"Failed to write {name} to {path}: {e}") from e
    logger.info("Wrote %s (%d objects) to %s", name, ak.sum(ak.num(collection, axis=1)), path)
