from __future__ import annotations

import io
import abc
import gzip
import logging
import warnings
from enum import Enum
from typing import Dict, List, Tuple, Union, Optional
from pathlib import Path
from functools import reduce
from itertools import product
from urllib.parse import urlparse
from urllib.request import url2pathname

import gemmi
import numpy as np
import requests
from Bio import PDB as PDB
from Bio.PDB import MMCIF2Dict
from Bio.PDB.Atom import Atom
from Bio.PDB.Structure import Structure
from Bio.PDB.PDBExceptions import PDBConstructionWarning, PDBConstructionException

import strucio
from strucio import PDB_DIR, URL_DIR, get_resource_path
from strucio.xtal import (
    SpaceGroup,
    CrystalCell,
    CrystallographicInfo,
    space_group_from_symbol,
)
from strucio.utils import remote_dl, stable_hash
from strucio.structure import (
    Transformation,
    StructureMetadata,
    BiologicalAssembly,
    set_metadata,
    keep_first_model,
)
from strucio.identifier import PDB_ID_PATTERN

PDB_FORMAT_CIF = "cif"
PDB_FORMAT_PDB = "pdb"
PDB_RCSB_DOWNLOAD_URL_TEMPLATES: Dict[str, str] = {
    PDB_FORMAT_CIF: r"https://files.rcsb.org/download/{pdb_id}.cif.gz",
    PDB_FORMAT_PDB: r"https://files.rcsb.org/download/{pdb_id}.pdb.gz",
}

MMCIF_MISSING_VALUES = {"?", "."}
MMCIF_CELL_KEYS = (
    "_cell.length_a",
    "_cell.length_b",
    "_cell.length_c",
    "_cell.angle_alpha",
    "_cell.angle_beta",
    "_cell.angle_gamma",
)
MMCIF_SPACE_GROUP_KEYS = (
    "_symmetry.space_group_name_H-M",
    "_space_group.name_H-M_alt",
)
MMCIF_SYMOP_KEYS = (
    "_space_group_symop.operation_xyz",
    "_symmetry_equiv.pos_as_xyz",
)
NCS_GIVEN_CODE = "given"
# Compressed files which can be recognized but not read
UNSUPPORTED_COMPRESSION_SUFFIXES = (".z",)

LOGGER = logging.getLogger(__name__)


class RetrievalError(Exception):
    """
    Base class for failures to obtain a structure from a retrieval backend.
    """


class StructureNotFoundError(RetrievalError):
    """
    The backend can't supply a structure with the requested id.
    """


class StructureIOError(RetrievalError):
    """
    An I/O failure (network, filesystem, unreadable file) occurred while
    fetching or reading the structure's source data.
    """


class StructureFiletype(Enum):
    """
    Types of structure files, with their known extensions (including the
    leading period).
    """

    PDB = (".pdb", ".pdb.gz", ".ent", ".ent.gz", ".pdb.Z", ".ent.Z")
    CIF = (".cif", ".cif.gz", ".mmcif", ".mmcif.gz")
    UNKNOWN = ()

    @property
    def extensions(self) -> Tuple[str, ...]:
        return self.value


def guess_filetype(filename: Union[str, Path]) -> StructureFiletype:
    """
    Attempts to guess the type of a structure file based on its extension.
    Extensions are matched case-insensitively in a fixed order, and the first
    match wins.
    :param filename: A file name or path.
    :return: The file type, UNKNOWN if no extension matched.
    """
    lower = str(filename).lower()
    for filetype in StructureFiletype:
        for ext in filetype.extensions:
            if lower.endswith(ext.lower()):
                return filetype
    return StructureFiletype.UNKNOWN


def pdb_download(
    pdb_id: str, pdb_dir=PDB_DIR, file_format: str = None, retries: int = None
) -> Path:
    """
    Downloads a protein structure file from PDB, unless it already exists
    locally.
    :param pdb_id: The id of the structure to download.
    :param pdb_dir: Directory to download PDB file to.
    :param file_format: Either 'cif' or 'pdb'. None means use the default
    from the config.
    :param retries: Number of times to retry on transient failures.
    :return: The path of the uncompressed local file.
    """
    file_format = file_format or strucio.get_config("DEFAULT_FILE_FORMAT")
    if file_format not in PDB_RCSB_DOWNLOAD_URL_TEMPLATES:
        raise ValueError(
            f"Unknown {file_format=}, must be one of "
            f"{tuple(PDB_RCSB_DOWNLOAD_URL_TEMPLATES)}"
        )
    if not PDB_ID_PATTERN.match(pdb_id):
        raise ValueError(f"Invalid PDB id format: {pdb_id}")

    pdb_id = pdb_id.lower()
    filename = get_resource_path(pdb_dir, f"{pdb_id}.{file_format}")
    download_url = PDB_RCSB_DOWNLOAD_URL_TEMPLATES[file_format].format(pdb_id=pdb_id)

    return remote_dl(
        download_url, filename, uncompress=True, skip_existing=True, retries=retries
    )


class CustomMMCIFParser(PDB.MMCIFParser):
    """
    Override biopython's parser so that it accepts a structure dict,
    to prevent re-parsing in case it was already parsed.
    """

    def __init__(self, **kw):
        kw.setdefault("QUIET", True)
        super().__init__(**kw)

    def get_structure(self, structure_id, filename=None, mmcif_dict=None):
        """Return the structure.

        Arguments:
         - structure_id - string, the id that will be used for the structure
         - filename - name of mmCIF file, OR an open text mode file handle
         - mmcif_dict - an already parsed dict of the same file

        """
        if filename is None and mmcif_dict is None:
            raise ValueError("Either filename or mmcif_dict must be given")

        with warnings.catch_warnings():
            warnings.filterwarnings("ignore", category=PDBConstructionWarning)

            if mmcif_dict is None:
                self._mmcif_dict = MMCIF2Dict.MMCIF2Dict(filename)
            else:
                self._mmcif_dict = mmcif_dict

            self._build_structure(structure_id)
            self._structure_builder.set_header(self._get_header())

        return self._structure_builder.get_structure()


def _mmcif_values(d: dict, key: str) -> Optional[List[str]]:
    values = d.get(key)
    if values is None:
        return None
    return values if isinstance(values, list) else [values]


def _mmcif_value(d: dict, key: str) -> Optional[str]:
    values = _mmcif_values(d, key)
    if not values or values[0] in MMCIF_MISSING_VALUES:
        return None
    return values[0]


def _mmcif_matrix(d: dict, category: str, i: int) -> np.ndarray:
    """
    Reads row i of a category which stores 'matrix[r][c]' and 'vector[r]'
    items, e.g. _pdbx_struct_oper_list, into a 4x4 affine matrix.
    """
    m = np.eye(4)
    try:
        for r in range(3):
            for c in range(3):
                m[r, c] = float(d[f"{category}.matrix[{r + 1}][{c + 1}]"][i])
            m[r, 3] = float(d[f"{category}.vector[{r + 1}]"][i])
    except (KeyError, IndexError, ValueError) as e:
        raise ValueError(f"Malformed operator {i} in {category}: {e}") from e
    return m


def parse_oper_expression(expression: str) -> List[Tuple[str, ...]]:
    """
    Expands an mmCIF operator expression (_pdbx_struct_assembly_gen
    .oper_expression) into the operator id combinations it denotes.
    Examples: '1' -> [('1',)], '1,2' -> [('1',), ('2',)],
    '(1-3)' -> [('1',), ('2',), ('3',)],
    '(X0)(1-2)' -> [('X0', '1'), ('X0', '2')].
    Combinations are Cartesian products; the rightmost operator is applied
    first.
    :param expression: The expression.
    :return: List of operator id tuples.
    """
    expression = expression.replace(" ", "")
    if "(" in expression:
        if not (expression.startswith("(") and expression.endswith(")")):
            raise ValueError(f"Invalid operator expression {expression!r}")
        groups = expression[1:-1].split(")(")
    else:
        groups = [expression]

    expanded: List[List[str]] = []
    for group in groups:
        op_ids = []
        for part in group.split(","):
            if not part or "(" in part or ")" in part:
                raise ValueError(f"Invalid operator expression {expression!r}")
            if "-" in part:
                start, end = part.split("-", maxsplit=1)
                if not (start.isdigit() and end.isdigit()):
                    raise ValueError(f"Invalid operator range {part!r}")
                op_ids.extend(str(i) for i in range(int(start), int(end) + 1))
            else:
                op_ids.append(part)
        expanded.append(op_ids)

    return list(product(*expanded))


def _label_to_auth_chains(d: dict) -> Dict[str, str]:
    labels = _mmcif_values(d, "_atom_site.label_asym_id") or []
    auths = _mmcif_values(d, "_atom_site.auth_asym_id") or []
    label_to_auth: Dict[str, str] = {}
    for label, auth in zip(labels, auths):
        label_to_auth.setdefault(label, auth)
    return label_to_auth


def parse_bio_assemblies(d: dict) -> Dict[int, BiologicalAssembly]:
    """
    Extracts the biological assemblies defined in an mmCIF dict.

    The assembly generation instructions refer to chains by their label
    (asym) ids; they're mapped to author chain ids, which are the chain ids
    of structures parsed by biopython. Transformations with the same operator
    within an assembly are merged, keeping the order of first appearance.

    :param d: A dict as returned by MMCIF2Dict.
    :return: A mapping from assembly index (1..N) to assembly. Assemblies with
    non-numeric ids (e.g. 'PAU') are skipped.
    """
    declared_ids = _mmcif_values(d, "_pdbx_struct_assembly.id") or []
    details = _mmcif_values(d, "_pdbx_struct_assembly.details") or []
    counts = _mmcif_values(d, "_pdbx_struct_assembly.oligomeric_count") or []
    gen_ids = _mmcif_values(d, "_pdbx_struct_assembly_gen.assembly_id") or []
    gen_exprs = _mmcif_values(d, "_pdbx_struct_assembly_gen.oper_expression") or []
    gen_asyms = _mmcif_values(d, "_pdbx_struct_assembly_gen.asym_id_list") or []
    oper_ids = _mmcif_values(d, "_pdbx_struct_oper_list.id") or []

    operators = {
        op_id: _mmcif_matrix(d, "_pdbx_struct_oper_list", i)
        for i, op_id in enumerate(oper_ids)
    }
    label_to_auth = _label_to_auth_chains(d)

    # assembly id -> operator id -> (matrix, chain ids)
    assembly_ops: Dict[str, Dict[str, Tuple[np.ndarray, Dict[str, None]]]] = {
        assembly_id: {} for assembly_id in declared_ids
    }
    for assembly_id, expression, asym_list in zip(gen_ids, gen_exprs, gen_asyms):
        chain_ids = [
            label_to_auth.get(asym_id.strip(), asym_id.strip())
            for asym_id in asym_list.split(",")
            if asym_id.strip()
        ]
        ops = assembly_ops.setdefault(assembly_id, {})
        for op_combination in parse_oper_expression(expression):
            missing = [op_id for op_id in op_combination if op_id not in operators]
            if missing:
                raise ValueError(
                    f"Assembly {assembly_id} refers to undefined operators {missing}"
                )
            op_id = str.join("x", op_combination)
            matrix = reduce(np.matmul, [operators[o] for o in op_combination])
            _, op_chains = ops.setdefault(op_id, (matrix, {}))
            op_chains.update(dict.fromkeys(chain_ids))

    assemblies = {}
    for assembly_id, ops in assembly_ops.items():
        if not _is_assembly_index(assembly_id):
            continue

        i = declared_ids.index(assembly_id) if assembly_id in declared_ids else None
        assembly_details, count = None, None
        if i is not None:
            if i < len(details) and details[i] not in MMCIF_MISSING_VALUES:
                assembly_details = details[i]
            if i < len(counts) and counts[i].isdigit():
                count = int(counts[i])

        index = int(assembly_id)
        assemblies[index] = _bio_assembly(index, ops, assembly_details, count)

    return assemblies


def _is_assembly_index(assembly_id: str) -> bool:
    if assembly_id.isdigit() and int(assembly_id) > 0:
        return True
    LOGGER.debug(f"Skipping non-numeric assembly {assembly_id}")
    return False


def _bio_assembly(
    index: int,
    ops: Dict[str, Tuple[np.ndarray, Dict[str, None]]],
    details: str = None,
    oligomeric_count: int = None,
) -> BiologicalAssembly:
    return BiologicalAssembly(
        index=index,
        transformations=tuple(
            Transformation(op_id, tuple(chains), matrix)
            for op_id, (matrix, chains) in ops.items()
        ),
        details=details,
        oligomeric_count=oligomeric_count,
    )


def parse_ncs_operators(d: dict) -> Optional[Tuple[np.ndarray, ...]]:
    """
    Extracts the NCS operators needed to complete the asymmetric unit.
    Operators with code 'given' are skipped, since their copies are already
    present in the deposited coordinates.
    :return: A tuple of 4x4 matrices, or None if there are no such operators.
    """
    ids = _mmcif_values(d, "_struct_ncs_oper.id") or []
    codes = _mmcif_values(d, "_struct_ncs_oper.code") or []

    ncs_operators = []
    for i, _ in enumerate(ids):
        if i < len(codes) and codes[i].lower() == NCS_GIVEN_CODE:
            continue
        m = _mmcif_matrix(d, "_struct_ncs_oper", i)
        m.setflags(write=False)
        ncs_operators.append(m)

    return tuple(ncs_operators) or None


def parse_space_group(d: dict) -> Optional[SpaceGroup]:
    """
    Creates the space group of a structure, from the symmetry operators listed
    in the file if present, otherwise by looking up the space group symbol.
    """
    symbol = None
    for key in MMCIF_SPACE_GROUP_KEYS:
        symbol = symbol or _mmcif_value(d, key)

    for key in MMCIF_SYMOP_KEYS:
        xyz_operators = _mmcif_values(d, key)
        if xyz_operators:
            return SpaceGroup.from_xyz(symbol or "?", xyz_operators)

    if symbol:
        return space_group_from_symbol(symbol)
    return None


def parse_crystallographic_info(d: dict) -> Optional[CrystallographicInfo]:
    """
    Extracts unit cell, space group and NCS operators from an mmCIF dict.
    :return: The crystallographic info or None if the file has none of them.
    :raises ValueError: If the unit cell parameters are present but invalid.
    """
    cell_values = [_mmcif_value(d, key) for key in MMCIF_CELL_KEYS]
    cell = None
    if all(v is not None for v in cell_values):
        try:
            cell_params = [float(v) for v in cell_values]
        except ValueError as e:
            raise ValueError(f"Invalid unit cell parameters {cell_values}") from e
        cell = CrystalCell(*cell_params)

    space_group = parse_space_group(d)
    ncs_operators = parse_ncs_operators(d)
    if cell is None and space_group is None and ncs_operators is None:
        return None

    return CrystallographicInfo(
        cell=cell, space_group=space_group, ncs_operators=ncs_operators
    )


def parse_metadata(pdb_id: str, d: dict) -> StructureMetadata:
    """
    :param pdb_id: Id of the structure.
    :param d: A dict as returned by MMCIF2Dict.
    :return: The header metadata of the structure.
    """
    return StructureMetadata(
        pdb_id=pdb_id,
        title=_mmcif_value(d, "_struct.title"),
        crystallographic_info=parse_crystallographic_info(d),
        bio_assemblies=parse_bio_assemblies(d),
    )


def _gemmi_matrix(tr: gemmi.Transform) -> np.ndarray:
    m = np.eye(4)
    m[:3, :3] = tr.mat.tolist()
    m[:3, 3] = tr.vec.tolist()
    return m


def _pdb_bio_assemblies(st: gemmi.Structure) -> Dict[int, BiologicalAssembly]:
    assemblies = {}
    for assembly in st.assemblies:
        if not _is_assembly_index(assembly.name):
            continue

        ops: Dict[str, Tuple[np.ndarray, Dict[str, None]]] = {}
        for gen in assembly.generators:
            for i, oper in enumerate(gen.operators):
                op_id = oper.name or str(i + 1)
                _, op_chains = ops.setdefault(
                    op_id, (_gemmi_matrix(oper.transform), {})
                )
                op_chains.update(dict.fromkeys(gen.chains))

        index = int(assembly.name)
        assemblies[index] = _bio_assembly(
            index, ops, details=assembly.oligomeric_details or None
        )
    return assemblies


def _pdb_crystallographic_info(st: gemmi.Structure) -> Optional[CrystallographicInfo]:
    cell = None
    if st.cell.is_crystal():
        cell = CrystalCell(*st.cell.parameters)

    symbol = st.spacegroup_hm.strip()
    space_group = space_group_from_symbol(symbol) if symbol else None

    ncs_operators = []
    for op in st.ncs:
        if op.given:
            continue
        m = _gemmi_matrix(op.tr)
        m.setflags(write=False)
        ncs_operators.append(m)

    if cell is None and space_group is None and not ncs_operators:
        return None
    return CrystallographicInfo(
        cell=cell, space_group=space_group, ncs_operators=tuple(ncs_operators) or None
    )


def parse_pdb_metadata(
    pdb_id: str, pdb_text: str, title: str = None
) -> StructureMetadata:
    """
    Extracts the header metadata of a PDB-format file: biological assemblies
    from REMARK 350, unit cell and space group from CRYST1 and NCS operators
    from MTRIX records.
    :param pdb_id: Id of the structure.
    :param pdb_text: Contents of the file.
    :param title: Title of the structure.
    :return: The header metadata of the structure.
    :raises ValueError: If the unit cell parameters are invalid.
    """
    st = gemmi.read_pdb_string(pdb_text)
    return StructureMetadata(
        pdb_id=pdb_id,
        title=title,
        crystallographic_info=_pdb_crystallographic_info(st),
        bio_assemblies=_pdb_bio_assemblies(st),
    )


def _is_unsupported_compression(path: Union[str, Path]) -> bool:
    return str(path).lower().endswith(UNSUPPORTED_COMPRESSION_SUFFIXES)


def _open_text(path: Path):
    if str(path).lower().endswith(".gz"):
        return gzip.open(path, "rt")
    return open(path, "r")


def load_structure_file(path: Union[str, Path], struct_id: str) -> Structure:
    """
    Loads a structure file (PDB or mmCIF, optionally gzipped). Only the first
    model is kept; ligands and waters are included.
    :param path: Path of the file.
    :param struct_id: Id to give the structure.
    :return: The structure, with metadata attached.
    :raises StructureNotFoundError: If the file doesn't exist.
    :raises StructureIOError: If the file can't be read or parsed.
    """
    path = Path(path)
    if not path.is_file():
        raise StructureNotFoundError(f"No structure file at {path}")

    filetype = guess_filetype(path)
    if filetype == StructureFiletype.UNKNOWN:
        raise StructureIOError(f"Unknown structure file type: {path}")
    if _is_unsupported_compression(path):
        raise StructureIOError(f"Unsupported compression of structure file {path}")

    LOGGER.info(f"Parsing struct from file {path}...")
    try:
        with _open_text(path) as handle:
            if filetype == StructureFiletype.CIF:
                mmcif_dict = MMCIF2Dict.MMCIF2Dict(handle)
                struct = CustomMMCIFParser().get_structure(
                    struct_id, mmcif_dict=mmcif_dict
                )
                metadata = parse_metadata(struct_id, mmcif_dict)
            else:
                pdb_text = handle.read()
                struct = PDB.PDBParser(QUIET=True).get_structure(
                    struct_id, io.StringIO(pdb_text)
                )
                metadata = parse_pdb_metadata(
                    struct_id, pdb_text, title=struct.header.get("name") or None
                )
    except (
        OSError,
        EOFError,
        ValueError,
        KeyError,
        RuntimeError,
        PDBConstructionException,
    ) as e:
        raise StructureIOError(f"Failed to read structure from {path}: {e}") from e

    keep_first_model(struct)
    return set_metadata(struct, metadata)


class StructureBackend(abc.ABC):
    """
    Retrieves structures by PDB code or URL.
    """

    @abc.abstractmethod
    def fetch_by_code(self, code: str) -> Structure:
        """
        :param code: A lowercase 4-character PDB code.
        :return: The asymmetric unit of the structure, first model only.
        :raises StructureNotFoundError: If no structure exists for the code.
        :raises StructureIOError: If the source data couldn't be read.
        """

    def fetch_atoms(self, code: str) -> List[Atom]:
        """
        :param code: A lowercase 4-character PDB code.
        :return: All atoms of the structure.
        """
        return list(self.fetch_by_code(code).get_atoms())

    def fetch_url(self, url: str) -> Structure:
        """
        :param url: URL of a structure file.
        :return: The structure in the file.
        """
        raise StructureNotFoundError(f"{self.__class__.__name__} can't load URLs")


class PDBFileBackend(StructureBackend):
    """
    Loads structures from PDB/mmCIF files in a local directory, downloading
    them from the RCSB PDB when they're missing.
    """

    def __init__(
        self,
        pdb_dir: Union[str, Path] = PDB_DIR,
        file_format: str = None,
        url_dir: Union[str, Path] = URL_DIR,
        download: bool = True,
        retries: int = None,
    ):
        """
        :param pdb_dir: Directory of structure files named by PDB code, e.g.
        '1abc.cif'.
        :param file_format: Format to download, 'cif' or 'pdb'. None means use
        the default from the config.
        :param url_dir: Directory to download files given by URL to.
        :param download: Whether to download missing files.
        :param retries: Number of times to retry failed downloads.
        """
        self.pdb_dir = Path(pdb_dir)
        self.file_format = file_format or strucio.get_config("DEFAULT_FILE_FORMAT")
        self.url_dir = Path(url_dir)
        self.download = download
        self.retries = retries

    def _local_file(self, code: str) -> Optional[Path]:
        for filetype in (StructureFiletype.CIF, StructureFiletype.PDB):
            for ext in filetype.extensions:
                path = self.pdb_dir.joinpath(f"{code}{ext}")
                if path.is_file() and not _is_unsupported_compression(path):
                    return path
        return None

    def fetch_by_code(self, code: str) -> Structure:
        code = code.lower()
        path = self._local_file(code)
        if path is None:
            if not self.download:
                raise StructureNotFoundError(f"No local file for {code} in {self.pdb_dir}")
            path = self._download(
                lambda: pdb_download(
                    code,
                    pdb_dir=self.pdb_dir,
                    file_format=self.file_format,
                    retries=self.retries,
                ),
                name=code,
            )
        return load_structure_file(path, struct_id=code)

    def fetch_url(self, url: str) -> Structure:
        parsed = urlparse(url)
        basename = Path(parsed.path).name
        struct_id = basename.split(".")[0].lower() or url

        if parsed.scheme == "file":
            return load_structure_file(Path(url2pathname(parsed.path)), struct_id)

        if guess_filetype(basename) == StructureFiletype.UNKNOWN:
            raise StructureIOError(f"Can't determine structure file type of {url}")

        uncompress = basename.lower().endswith(".gz")
        local_name = basename[: -len(".gz")] if uncompress else basename
        save_path = get_resource_path(self.url_dir, f"{stable_hash(url)}-{local_name}")
        path = self._download(
            lambda: remote_dl(
                url,
                save_path,
                uncompress=uncompress,
                skip_existing=True,
                retries=self.retries,
            ),
            name=url,
        )
        return load_structure_file(path, struct_id=struct_id)

    @staticmethod
    def _download(download_fn, name: str) -> Path:
        try:
            return download_fn()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            if status == 404:
                raise StructureNotFoundError(f"No structure found for {name}") from e
            raise StructureIOError(f"Failed to download {name}: {e}") from e
        except (requests.RequestException, OSError) as e:
            raise StructureIOError(f"Failed to download {name}: {e}") from e

    def __repr__(self):
        return f"{self.__class__.__name__}({self.pdb_dir}, {self.file_format})"
