import argparse
import logging
import sys
import time
from pathlib import Path

from coneiso.isolation import Isolation
from coneiso.isolation_config import get_module_config, list_modules, parse_overrides
from coneiso.root_io import read_collections, write_collection

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def _default_output(input_path, output_array):
    stem = Path(input_path).stem
    return Path("output") / f"{stem}_{output_array}.root"


def run(args):
    """Read the bound collections, isolate, and write the output collection."""
    config = get_module_config(args.module, parse_overrides(args.set))
    names = [config.candidate_input_array, config.isolation_input_array]
    if config.rho_input_array is not None:
        names.append(config.rho_input_array)

    collections = read_collections(
        args.input,
        names,
        treename=args.treename,
        entry_stop=args.entry_stop,
    )
    isolation = Isolation(config)
    output = isolation.process(collections)

    out_path = args.output or _default_output(args.input, config.output_array)
    write_collection(str(out_path), config.output_array, output[config.output_array], treename=args.treename)
    return out_path


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Cone isolation of candidates in a flat ROOT tree.")
    parser.add_argument("input", nargs="?", default=None, type=str, help="Input ROOT file.")
    optional = parser.add_argument_group("Optional arguments")
    optional.add_argument("--module", type=str, default="ElectronIsolation", help="Isolation module from config.yaml (default: ElectronIsolation).")
    optional.add_argument("--set", nargs="*", default=[], metavar="KEY=VALUE", help="Override config keys, e.g. --set DeltaRMax=0.4 UsePTSum=true")
    optional.add_argument("--treename", type=str, default="Events", help="Tree holding the collections (default: Events).")
    optional.add_argument("--entry-stop", type=int, default=None, help="Process only the first N entries.")
    optional.add_argument("--output", type=Path, default=None, help="Output ROOT file (default: output/<input>_<OutputArray>.root).")
    optional.add_argument("--list-modules", action="store_true", help="Print available isolation modules and exit.")
    args = parser.parse_args()

    if args.list_modules:
        for name in list_modules():
            print(name)
        raise SystemExit(0)

    if args.input is None:
        parser.error("input is required unless --list-modules is given")

    t0 = time.monotonic()
    try:
        out_path = run(args)
    except (ValueError, KeyError, RuntimeError) as e:
        logging.error("Isolation failed: %s", e)
        sys.exit(1)
    logging.info("Saved isolated candidates to %s", out_path)
    logging.info(f"Execution took {time.monotonic() - t0:.1f} seconds")
