import os
import re
import inspect
import argparse
import logging.config
from typing import Any, Dict, Callable, Sequence
from pathlib import Path

from Bio.PDB import PDBIO, MMCIFIO
from Bio.PDB.Structure import Structure

import strucio
from strucio.cache import StructureCache
from strucio.assembly import AssemblyResolver
from strucio.structure import get_metadata
from strucio.external_dbs.pdb import PDBFileBackend

_LOG = logging.getLogger(__name__)
_CFG_PREFIX_ = "_CFG_"


def _generate_cli_from_func(func: Callable, skip=()):
    """
    Given some other function, this function generates arguments for pyton's
    argparse so that a CLI for the given function can be created.
    :param func: The function to generate for.
    :param skip: Parameters to skip.
    :return: A dict of dics for the arguments.
    Outer dict maps from parameter name to an arguments dict.
    Each arguments dict # defines the arguments for the argparser's
    add_argument method.
    """
    # Get parameter descriptions from docstring
    doc = inspect.cleandoc(inspect.getdoc(func))
    doc_split = re.sub(r"\r?\n", " ", doc).split(":param ")
    func_description = doc_split[0]
    param_doc_split = (d.split(":", maxsplit=1) for d in doc_split[1:])
    param_doc = {d[0]: d[1].strip() for d in param_doc_split}

    cli_args: Dict[str, Dict[str, Any]] = {}

    sig = inspect.signature(func)
    skip = set(skip)
    for param in sig.parameters.values():
        param: inspect.Parameter
        if param.name in skip or param.kind == inspect.Parameter.VAR_KEYWORD:
            continue

        args = dict(dest=param.name, help=param_doc.get(param.name), action="store")
        if param.default == inspect.Parameter.empty:
            # Required params are positional
            args.pop("dest")
            args["names"] = [param.name]
            args["type"] = param.annotation if param.annotation in (int, str) else str
            cli_args[param.name] = args
            continue

        args["required"] = False
        args["default"] = param.default
        args["type"] = type(param.default) if param.default is not None else str
        args["names"] = [f'--{param.name.replace("_", "-")}']

        # For bools, convert to flags which flip the default
        if args["type"] is bool:
            args["action"] = "store_false" if param.default else "store_true"
            args.pop("type")

        cli_args[param.name] = args

    return func_description, cli_args


def write_structure(struct: Structure, out_file) -> Path:
    """
    Writes a structure to a file, in mmCIF format if the file extension is
    '.cif' and PDB format otherwise. Structures with chain ids longer than one
    character (e.g. assemblies) can't be written in PDB format, so they are
    written as mmCIF with a '.cif' extension instead.
    :param struct: The structure.
    :param out_file: Path of the output file.
    :return: The path of the written file.
    """
    out_file = Path(out_file).expanduser()
    os.makedirs(out_file.parent, exist_ok=True)

    use_cif = out_file.suffix.lower() == ".cif"
    if not use_cif:
        long_ids = [c.get_id() for c in struct.get_chains() if len(c.get_id()) > 1]
        if long_ids:
            out_file = out_file.with_suffix(".cif")
            use_cif = True
            _LOG.warning(
                f"Chain ids {long_ids} don't fit the PDB format, "
                f"writing mmCIF to {out_file}"
            )

    io = MMCIFIO() if use_cif else PDBIO()
    io.set_structure(struct)
    io.save(str(out_file))
    _LOG.info(f"Wrote {struct.get_id()} to {out_file}")
    return out_file


def _cache(pdb_dir: str = None) -> StructureCache:
    if pdb_dir:
        return StructureCache(backend=PDBFileBackend(pdb_dir=pdb_dir))
    return StructureCache()


def fetch(name: str, out_file: str = "", pdb_dir: str = ""):
    """
    Resolves a structure name (e.g. '4HHB.C', '4GCR.A_1-83', 'BIOL:1fah:2')
    and writes the resulting structure to a file.
    :param name: The structure name.
    :param out_file: Output file. Defaults to the name, with a '.cif'
    extension, in the current directory.
    :param pdb_dir: Directory of local structure files. Defaults to the
    configured PDB directory.
    """
    struct = _cache(pdb_dir).get_structure(name)
    if not out_file:
        out_file = re.sub(r"[^A-Za-z0-9_.\-]", "_", name) + ".cif"
    return write_structure(struct, out_file)


def assemblies(code: str, pdb_dir: str = ""):
    """
    Lists the biological assemblies declared for a structure.
    :param code: The PDB code.
    :param pdb_dir: Directory of local structure files. Defaults to the
    configured PDB directory.
    """
    cache = _cache(pdb_dir)
    metadata = get_metadata(cache.get_asym_unit(code))
    _LOG.info(f"{code}: {metadata.num_bio_assemblies} biological assemblies")
    for index, assembly in metadata.bio_assemblies.items():
        ops = str.join(", ", [repr(t) for t in assembly.transformations])
        _LOG.info(f"  {index}: {assembly.details or ''} [{ops}]")
    return metadata.bio_assemblies


def unit_cell(code: str, out_file: str = "", pdb_dir: str = ""):
    """
    Reconstructs the contents of the crystallographic unit cell of a
    structure and writes them to a file.
    :param code: The PDB code.
    :param out_file: Output file. Defaults to '<code>-cell.cif' in the current
    directory.
    :param pdb_dir: Directory of local structure files. Defaults to the
    configured PDB directory.
    """
    struct = AssemblyResolver(cache=_cache(pdb_dir)).get_unit_cell(code)
    return write_structure(struct, out_file or f"{code.lower()}-cell.cif")


def _parse_cli(argv: Sequence[str] = None):
    hf = argparse.ArgumentDefaultsHelpFormatter
    p = argparse.ArgumentParser(
        description="strucio command-line interface", formatter_class=hf
    )

    p.set_defaults(handler=None)

    # Top-level configuration parameters
    # The _CFG_PREFIX_ is a marker to map from CLI argument to config param
    p.add_argument(
        "--retries",
        "-r",
        type=int,
        required=False,
        default=strucio.get_config("REQUEST_RETRIES"),
        dest=f"{_CFG_PREFIX_}REQUEST_RETRIES",
        help="Number of time to retry failed downloads.",
    )
    p.add_argument(
        "--file-format",
        "-f",
        type=str,
        choices=["cif", "pdb"],
        required=False,
        default=strucio.get_config("DEFAULT_FILE_FORMAT"),
        dest=f"{_CFG_PREFIX_}DEFAULT_FILE_FORMAT",
        help="Format of structure files to download.",
    )
    p.add_argument(
        "--debug",
        "-D",
        action="store_true",
        default=False,
        required=False,
        dest=f"{_CFG_PREFIX_}LOG_DEBUG",
        help="Whether to log at the DEBUG level.",
    )

    # Subcommands
    sp = p.add_subparsers(help="Available actions", dest="action")

    for func in (fetch, assemblies, unit_cell):
        desc, args = _generate_cli_from_func(func)
        sp_func = sp.add_parser(
            func.__name__.replace("_", "-"), help=desc, formatter_class=hf
        )
        sp_func.set_defaults(handler=func)
        for _, arg_dict in args.items():
            arg_dict = arg_dict.copy()
            names = arg_dict.pop("names")
            sp_func.add_argument(*names, **arg_dict)

    parsed = p.parse_args(argv)
    if not parsed.action:
        p.error("Please specify an action")

    return parsed


def main(argv: Sequence[str] = None):
    parsed_args = _parse_cli(argv)

    # Convert to a dict
    parsed_args = vars(parsed_args)

    # First set top-level configuration
    for arg in parsed_args:
        if not arg.startswith(_CFG_PREFIX_):
            continue
        cfg_name = arg.replace(_CFG_PREFIX_, "")
        strucio.set_config(cfg_name, parsed_args[arg])

    # Filter out configuration params
    parsed_args = {
        k: v for k, v in parsed_args.items() if not k.startswith(_CFG_PREFIX_)
    }
    parsed_args.pop("action")

    try:
        # Get the function to invoke
        handler_fn = parsed_args.pop("handler")

        # Setup log level for the application
        if strucio.get_config("LOG_DEBUG"):
            logging.root.setLevel(logging.DEBUG)

        # Invoke it with the remaining arguments
        return handler_fn(**parsed_args)
    except KeyboardInterrupt as e:
        _LOG.warning(f"Interrupted by user, stopping.")
    except Exception as e:
        _LOG.error(f"{e.__class__.__name__}: {e}", exc_info=e)


if __name__ == "__main__":
    main()
