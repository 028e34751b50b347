"""
Metadata attached to structures, and helpers for creating new structures from
parts of existing ones.

Structures are plain Biopython :class:`Bio.PDB.Structure.Structure` objects.
The header metadata needed for assembly reconstruction is stored as an
immutable :class:`StructureMetadata` snapshot in the structure's ``xtra`` dict.
"""
from __future__ import annotations

import copy
from types import MappingProxyType
from typing import Dict, Tuple, Mapping, Iterable, Optional
from dataclasses import field, dataclass

import numpy as np
from Bio.PDB.Chain import Chain
from Bio.PDB.Model import Model
from Bio.PDB.Structure import Structure

from strucio.xtal import CrystalCell, CrystallographicInfo, check_affine_matrix

METADATA_KEY = "strucio_metadata"


@dataclass(frozen=True)
class Transformation:
    """
    An affine transformation in orthonormal coordinates, together with the
    chains of the asymmetric unit it should be applied to.
    """

    operator_id: str
    chain_ids: Tuple[str, ...]
    matrix: np.ndarray

    def __post_init__(self):
        m = np.array(check_affine_matrix(self.matrix, name=f"operator {self}"))
        m.setflags(write=False)
        object.__setattr__(self, "matrix", m)
        object.__setattr__(self, "chain_ids", tuple(self.chain_ids))

    @classmethod
    def from_rotation_translation(
        cls,
        operator_id: str,
        chain_ids: Iterable[str],
        rotation: np.ndarray,
        translation: np.ndarray,
    ) -> Transformation:
        m = np.eye(4)
        m[:3, :3] = rotation
        m[:3, 3] = translation
        return cls(operator_id, tuple(chain_ids), m)

    @classmethod
    def from_crystal_operator(
        cls,
        operator_id: str,
        chain_ids: Iterable[str],
        cell: CrystalCell,
        frac_matrix: np.ndarray,
    ) -> Transformation:
        """
        Creates a transformation from an operator given in fractional
        coordinates of the given unit cell.
        """
        return cls(operator_id, tuple(chain_ids), cell.transf_to_orthonormal(frac_matrix))

    @property
    def rotation(self) -> np.ndarray:
        return self.matrix[:3, :3]

    @property
    def translation(self) -> np.ndarray:
        return self.matrix[:3, 3]

    @property
    def is_identity(self) -> bool:
        return bool(np.array_equal(self.matrix, np.eye(4)))

    def apply(self, coords: np.ndarray) -> np.ndarray:
        """
        :param coords: Array of shape (N, 3).
        :return: Transformed coordinates, shape (N, 3).
        """
        return coords @ self.rotation.T + self.translation

    def __eq__(self, other):
        if not isinstance(other, Transformation):
            return NotImplemented
        return (
            self.operator_id == other.operator_id
            and self.chain_ids == other.chain_ids
            and np.array_equal(self.matrix, other.matrix)
        )

    def __hash__(self):
        return hash((self.operator_id, self.chain_ids, self.matrix.tobytes()))

    def __repr__(self):
        return f"Transformation({self.operator_id}, chains={','.join(self.chain_ids)})"


@dataclass(frozen=True)
class BiologicalAssembly:
    """
    A biological assembly: an ordered sequence of transformations to apply to
    chains of the asymmetric unit.
    """

    index: int
    transformations: Tuple[Transformation, ...]
    details: Optional[str] = None
    oligomeric_count: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "transformations", tuple(self.transformations))

    @property
    def chain_ids(self) -> Tuple[str, ...]:
        chain_ids: Dict[str, None] = {}
        for t in self.transformations:
            chain_ids.update(dict.fromkeys(t.chain_ids))
        return tuple(chain_ids)

    @property
    def num_chains(self) -> int:
        return sum(len(t.chain_ids) for t in self.transformations)


@dataclass(frozen=True)
class StructureMetadata:
    """
    Read-only header metadata of a structure.
    """

    pdb_id: str
    title: Optional[str] = None
    crystallographic_info: Optional[CrystallographicInfo] = None
    bio_assemblies: Mapping[int, BiologicalAssembly] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def __post_init__(self):
        assemblies = dict(sorted(dict(self.bio_assemblies).items()))
        if 0 in assemblies:
            raise ValueError("Assembly index 0 is reserved for the asymmetric unit")
        object.__setattr__(self, "bio_assemblies", MappingProxyType(assemblies))

    @property
    def num_bio_assemblies(self) -> int:
        return len(self.bio_assemblies)


def get_metadata(struct: Structure) -> StructureMetadata:
    """
    :param struct: A structure.
    :return: The metadata attached to the structure. Structures without
    attached metadata get an empty metadata object with their id.
    """
    metadata = struct.xtra.get(METADATA_KEY)
    if metadata is None:
        metadata = StructureMetadata(pdb_id=str(struct.get_id()).lower())
    return metadata


def set_metadata(struct: Structure, metadata: StructureMetadata) -> Structure:
    struct.xtra[METADATA_KEY] = metadata
    return struct


def keep_first_model(struct: Structure) -> Structure:
    """
    Removes all but the first model from a structure (e.g. for NMR entries).
    :return: The same structure, modified in place.
    """
    for model in list(struct)[1:]:
        struct.detach_child(model.get_id())
    return struct


def first_model(struct: Structure) -> Model:
    models = list(struct)
    if not models:
        raise ValueError(f"Structure {struct.get_id()} has no models")
    return models[0]


def derived_structure(
    template: Structure, chains: Iterable[Chain], struct_id: str = None
) -> Structure:
    """
    Creates a new structure from the given chains, inheriting the header and
    metadata of a template structure but not its chains.
    :param template: The structure to inherit the header from.
    :param chains: Chains to add to the new structure's only model. They must
    not have a parent and must have unique ids.
    :param struct_id: Id of the new structure. Defaults to the template's.
    :return: The new structure.
    """
    struct = Structure(struct_id or template.get_id())
    struct.header = copy.deepcopy(getattr(template, "header", {}))
    struct.xtra = {k: v for k, v in template.xtra.items()}

    model = Model(0)
    struct.add(model)
    for chain in chains:
        model.add(chain)
    return struct
