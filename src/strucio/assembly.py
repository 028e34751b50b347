"""
Reconstruction of biological assemblies from an asymmetric unit and the
transformations declared for it in the structure's header.
"""
from __future__ import annotations

import abc
import logging
from typing import List, Callable, Optional, Sequence

import numpy as np
from Bio.PDB.Chain import Chain
from Bio.PDB.Structure import Structure

import strucio
from strucio.structure import (
    Transformation,
    first_model,
    get_metadata,
    derived_structure,
)

LOGGER = logging.getLogger(__name__)

ASYM_UNIT_INDEX = 0
CHAIN_XTRA_ASYM_CHAIN_ID = "asym_chain_id"
CHAIN_XTRA_OPERATOR_ID = "operator_id"


class AssemblyError(Exception):
    """
    Base class for failures to reconstruct a biological assembly.
    """


class AssemblyNotAvailableError(AssemblyError):
    """
    The requested assembly index isn't defined for the structure.
    """

    def __init__(self, code: str, index: int, num_assemblies: int = None):
        msg = f"Biological assembly {index} not available for {code}"
        if num_assemblies is not None:
            msg = f"{msg} (it has {num_assemblies})"
        super().__init__(msg)
        self.code = code
        self.index = index


class NoTransformationsError(AssemblyError):
    """
    The assembly is declared, but no transformations were populated for it.
    """

    def __init__(self, code: str, index: int):
        super().__init__(
            f"Biological assembly {index} of {code} has no transformations"
        )
        self.code = code
        self.index = index


class AssemblyBuilder(object):
    """
    Builds a composite structure by applying transformations to copies of
    chains of an asymmetric unit.
    """

    def __init__(self, chain_id_separator: str = None):
        """
        :param chain_id_separator: Separator between the original chain id and
        the operator id in the ids of the generated chains. None means use
        the default from the config.
        """
        if chain_id_separator is None:
            chain_id_separator = strucio.get_config("ASSEMBLY_CHAIN_SEP")
        self.chain_id_separator = chain_id_separator

    def new_chain_id(self, chain_id: str, t: Transformation) -> str:
        return f"{chain_id}{self.chain_id_separator}{t.operator_id}"

    def build(
        self,
        asym_unit: Structure,
        transformations: Sequence[Transformation],
        struct_id: str = None,
    ) -> Structure:
        """
        Applies each transformation, in order, to a deep copy of each chain it
        names. Identity transformations also produce a copy.
        :param asym_unit: The asymmetric unit. It's not modified.
        :param transformations: The transformations.
        :param struct_id: Id of the new structure. Defaults to the id of the
        asymmetric unit.
        :return: A new structure containing only the transformed copies, with
        the header and metadata of the asymmetric unit.
        :raises AssemblyError: If a transformation names a missing chain or
        two copies would get the same chain id.
        """
        model = first_model(asym_unit)

        chains: List[Chain] = []
        new_ids = set()
        for t in transformations:
            for chain_id in t.chain_ids:
                if chain_id not in model:
                    raise AssemblyError(
                        f"Operator {t.operator_id} refers to chain {chain_id}, "
                        f"which doesn't exist in {asym_unit.get_id()}"
                    )

                new_id = self.new_chain_id(chain_id, t)
                if new_id in new_ids:
                    raise AssemblyError(f"Duplicate assembly chain id {new_id}")
                new_ids.add(new_id)

                new_chain = model[chain_id].copy()
                _transform_chain(new_chain, t)
                new_chain.id = new_id
                new_chain.xtra[CHAIN_XTRA_ASYM_CHAIN_ID] = chain_id
                new_chain.xtra[CHAIN_XTRA_OPERATOR_ID] = t.operator_id
                chains.append(new_chain)

        LOGGER.debug(
            f"Built {len(chains)} chains from {len(transformations)} "
            f"transformations of {asym_unit.get_id()}"
        )
        return derived_structure(asym_unit, chains, struct_id=struct_id)


def _transform_chain(chain: Chain, t: Transformation):
    # Every residue of a point mutation, and every alternate location of a
    # disordered atom
    atoms = [
        atom
        for residue in chain.get_unpacked_list()
        for atom in residue.get_unpacked_list()
    ]
    if not atoms:
        return

    coords = np.array([atom.get_coord() for atom in atoms], dtype=np.float64)
    new_coords = t.apply(coords).astype(np.float32)
    for atom, coord in zip(atoms, new_coords):
        atom.set_coord(coord)


class BioUnitDataProvider(abc.ABC):
    """
    Supplies the asymmetric unit of a structure and its assembly metadata to
    an :class:`AssemblyResolver`. A provider may hold on to the last
    asymmetric unit it loaded until it's released with set_asym_unit(None).
    """

    @abc.abstractmethod
    def get_asym_unit(self, code: str) -> Structure:
        pass

    @abc.abstractmethod
    def set_asym_unit(self, asym_unit: Optional[Structure]):
        pass

    @abc.abstractmethod
    def set_structure_cache(self, cache):
        pass

    def get_nr_biol_assemblies(self, code: str) -> int:
        return get_metadata(self.get_asym_unit(code)).num_bio_assemblies

    def has_biol_assembly(self, code: str) -> bool:
        return self.get_nr_biol_assemblies(code) > 0


class CachedBioUnitDataProvider(BioUnitDataProvider):
    """
    Loads asymmetric units through a :class:`strucio.cache.StructureCache`.
    """

    def __init__(self, cache=None):
        self._cache = cache
        self._asym_unit: Optional[Structure] = None

    @property
    def cache(self):
        if self._cache is None:
            from strucio.cache import default_cache

            self._cache = default_cache()
        return self._cache

    def set_structure_cache(self, cache):
        self._cache = cache

    def get_asym_unit(self, code: str) -> Structure:
        code = code.lower()
        if self._asym_unit is not None and get_metadata(self._asym_unit).pdb_id == code:
            return self._asym_unit

        self._asym_unit = self.cache.get_asym_unit(code)
        return self._asym_unit

    def set_asym_unit(self, asym_unit: Optional[Structure]):
        self._asym_unit = asym_unit


class AssemblyResolver(object):
    """
    Looks up the assemblies declared for a structure and reconstructs them.
    """

    def __init__(
        self,
        cache=None,
        provider_factory: Callable[[], BioUnitDataProvider] = CachedBioUnitDataProvider,
        builder: AssemblyBuilder = None,
    ):
        """
        :param cache: The :class:`strucio.cache.StructureCache` to load
        asymmetric units with. None means the default cache.
        :param provider_factory: Creates the provider of asymmetric units and
        assembly metadata. A new provider is used for each call.
        :param builder: Builds the assemblies.
        """
        self.cache = cache
        self.provider_factory = provider_factory
        self.builder = builder or AssemblyBuilder()

    def _new_provider(self) -> BioUnitDataProvider:
        provider = self.provider_factory()
        if self.cache is not None:
            provider.set_structure_cache(self.cache)
        return provider

    def has_assembly(self, code: str) -> bool:
        """
        :return: Whether at least one biological assembly is declared for the
        structure.
        """
        provider = self._new_provider()
        try:
            return provider.has_biol_assembly(code.lower())
        finally:
            provider.set_asym_unit(None)

    def assembly_count(self, code: str) -> int:
        """
        :return: Number of biological assemblies declared for the structure,
        not counting the asymmetric unit.
        """
        provider = self._new_provider()
        try:
            return provider.get_nr_biol_assemblies(code.lower())
        finally:
            provider.set_asym_unit(None)

    def get_assembly(self, code: str, index: int = 1) -> Structure:
        """
        Reconstructs a biological assembly.
        :param code: PDB code.
        :param index: Index of the assembly, starting from 1. Index 0 returns
        the asymmetric unit itself.
        :return: The assembly as a new structure.
        :raises AssemblyNotAvailableError: If the index isn't declared.
        :raises NoTransformationsError: If the assembly has no transformations.
        """
        code = code.lower()
        provider = self._new_provider()
        try:
            asym_unit = provider.get_asym_unit(code)
            if index == ASYM_UNIT_INDEX:
                LOGGER.info(
                    f"Requested assembly {index} of {code}, "
                    f"returning the asymmetric unit"
                )
                return asym_unit

            assemblies = get_metadata(asym_unit).bio_assemblies
            assembly = assemblies.get(index)
            if assembly is None:
                raise AssemblyNotAvailableError(code, index, len(assemblies))
            if not assembly.transformations:
                raise NoTransformationsError(code, index)

            LOGGER.info(
                f"Building assembly {index} of {code} from "
                f"{len(assembly.transformations)} transformations"
            )
            return self.builder.build(
                asym_unit, assembly.transformations, struct_id=code
            )
        finally:
            provider.set_asym_unit(None)

    def get_unit_cell(self, code: str) -> Structure:
        """
        Reconstructs the contents of the crystallographic unit cell by
        applying every space group operator to all chains of the asymmetric
        unit.
        :param code: PDB code.
        :return: The unit cell contents as a new structure.
        :raises NoTransformationsError: If the structure has no unit cell or
        space group.
        """
        code = code.lower()
        provider = self._new_provider()
        try:
            asym_unit = provider.get_asym_unit(code)
            info = get_metadata(asym_unit).crystallographic_info
            if info is None or info.cell is None or info.space_group is None:
                raise NoTransformationsError(code, ASYM_UNIT_INDEX)

            chain_ids = tuple(chain.get_id() for chain in first_model(asym_unit))
            transformations = [
                Transformation(str(i + 1), chain_ids, m)
                for i, m in enumerate(info.orthonormal_transforms())
            ]
            LOGGER.info(
                f"Building unit cell of {code} ({info.space_group.symbol}) from "
                f"{len(transformations)} operators"
            )
            return self.builder.build(asym_unit, transformations, struct_id=code)
        finally:
            provider.set_asym_unit(None)
