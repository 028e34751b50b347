from __future__ import annotations

import abc
import logging
import threading
from typing import Dict, List, Callable, Optional, Sequence

from Bio.PDB.Chain import Chain
from Bio.PDB.Structure import Structure

from strucio.identifier import (
    ChainRange,
    Identifier,
    WholeEntry,
    ScopDomain,
    UrlIdentifier,
    ResidueNumber,
    RangeSelection,
    ChainSelection,
    DomainPredictionId,
    BiologicalAssemblyId,
    parse_identifier,
)
from strucio.structure import first_model, derived_structure
from strucio.external_dbs.pdb import (
    RetrievalError,
    PDBFileBackend,
    StructureIOError,
    StructureBackend,
    StructureNotFoundError,
)

__all__ = [
    "RetrievalError",
    "StructureNotFoundError",
    "StructureIOError",
    "DomainProvider",
    "StructureCache",
    "default_cache",
    "get_structure",
    "get_biological_assembly",
]

LOGGER = logging.getLogger(__name__)


class DomainProvider(abc.ABC):
    """
    Maps domain ids (SCOP or PDP) to the residue ranges they consist of.
    """

    @abc.abstractmethod
    def get_domain_ranges(self, domain_id: str) -> Sequence[ChainRange]:
        """
        :param domain_id: A SCOP domain id (e.g. 'd2bq6a1') or a PDP token
        (e.g. '1abcA1').
        :return: The chains/ranges of the domain, in order.
        :raises StructureNotFoundError: If the domain is unknown.
        """


class StructureCache(object):
    """
    Resolves parsed identifiers into structures, using a single retrieval
    backend which is created lazily on first use.
    """

    def __init__(
        self,
        backend: StructureBackend = None,
        backend_factory: Callable[[], StructureBackend] = PDBFileBackend,
        domain_provider: DomainProvider = None,
    ):
        """
        :param backend: The backend to use. If None, one is created with
        backend_factory when it's first needed.
        :param backend_factory: Creates the backend.
        :param domain_provider: Resolves SCOP and PDP domain ids to residue
        ranges. Optional.
        """
        self._backend = backend
        self._backend_factory = backend_factory
        self._backend_lock = threading.Lock()
        self.domain_provider = domain_provider

    @property
    def backend(self) -> StructureBackend:
        backend = self._backend
        if backend is not None:
            return backend

        with self._backend_lock:
            if self._backend is None:
                LOGGER.debug(f"Creating structure backend with {self._backend_factory}")
                self._backend = self._backend_factory()
            return self._backend

    def set_backend(self, backend: Optional[StructureBackend]):
        """
        Replaces the backend for subsequent resolutions. Resolutions already
        in progress keep using the backend they started with.
        :param backend: The new backend. None means a new one will be created
        lazily by the factory.
        """
        with self._backend_lock:
            LOGGER.info(f"Setting structure backend to {backend}")
            self._backend = backend

    def get_structure(self, name: str) -> Structure:
        """
        Parses a structure name and resolves it.
        :param name: Structure name, see :mod:`strucio.identifier`.
        :return: The structure.
        """
        return self.resolve(parse_identifier(name))

    def get_asym_unit(self, code: str) -> Structure:
        """
        :param code: A PDB code.
        :return: The asymmetric unit (first model) of the structure.
        """
        return self.backend.fetch_by_code(code.lower())

    def resolve(self, identifier: Identifier) -> Structure:
        """
        Resolves a parsed identifier into a structure.
        :param identifier: The identifier.
        :return: The structure. Sub-selections are new structures containing
        copies of the selected parts of the asymmetric unit.
        :raises StructureNotFoundError: If the backend can't supply the
        structure or a selected chain doesn't exist.
        :raises StructureIOError: On I/O failures while fetching.
        """
        backend = self.backend

        if isinstance(identifier, WholeEntry):
            return backend.fetch_by_code(identifier.code)

        if isinstance(identifier, UrlIdentifier):
            return backend.fetch_url(identifier.url)

        if isinstance(identifier, (ChainSelection, RangeSelection)):
            asym_unit = backend.fetch_by_code(identifier.code)
            return select_ranges(asym_unit, identifier.ranges, struct_id=str(identifier))

        if isinstance(identifier, ScopDomain):
            ranges = self._domain_ranges(identifier)
            asym_unit = backend.fetch_by_code(identifier.code)
            if ranges is None:
                ranges = _scop_fallback_ranges(identifier, asym_unit)
            return select_ranges(asym_unit, ranges, struct_id=str(identifier))

        if isinstance(identifier, DomainPredictionId):
            ranges = self._domain_ranges(identifier)
            if ranges is None:
                raise StructureNotFoundError(
                    f"Can't resolve PDP domain {identifier} without a domain provider"
                )
            asym_unit = backend.fetch_by_code(identifier.code)
            return select_ranges(asym_unit, ranges, struct_id=str(identifier))

        if isinstance(identifier, BiologicalAssemblyId):
            from strucio.assembly import AssemblyResolver

            resolver = AssemblyResolver(cache=self._with_backend(backend))
            return resolver.get_assembly(identifier.code, identifier.index)

        raise TypeError(f"Unknown identifier type: {identifier!r}")

    def _with_backend(self, backend: StructureBackend) -> StructureCache:
        # A view of this cache which keeps using the given backend
        return StructureCache(
            backend=backend,
            backend_factory=self._backend_factory,
            domain_provider=self.domain_provider,
        )

    def _domain_ranges(self, identifier) -> Optional[Sequence[ChainRange]]:
        if self.domain_provider is None:
            return None
        domain_id = (
            identifier.domain_id
            if isinstance(identifier, ScopDomain)
            else identifier.token
        )
        return self.domain_provider.get_domain_ranges(domain_id)

    def __repr__(self):
        return f"{self.__class__.__name__}(backend={self._backend})"


def _scop_fallback_ranges(
    identifier: ScopDomain, asym_unit: Structure
) -> Sequence[ChainRange]:
    if identifier.chain is None:
        LOGGER.warning(f"No domain provider, {identifier} resolves to all chains")
        return [ChainRange(chain.get_id()) for chain in first_model(asym_unit)]

    # SCOP domain ids use lowercase chain letters
    model = first_model(asym_unit)
    chain_id = identifier.chain
    if chain_id not in model and chain_id.upper() in model:
        chain_id = chain_id.upper()
    LOGGER.warning(f"No domain provider, {identifier} resolves to chain {chain_id}")
    return [ChainRange(chain_id)]


def select_ranges(
    asym_unit: Structure, ranges: Sequence[ChainRange], struct_id: str = None
) -> Structure:
    """
    Creates a new structure containing copies of the selected chains and
    residue ranges of a structure. Several ranges of the same chain are
    combined into one chain.
    :param asym_unit: The structure to select from.
    :param ranges: The selection, in output order.
    :param struct_id: Id of the new structure.
    :return: The new structure, with the header and metadata of asym_unit.
    :raises StructureNotFoundError: If a chain doesn't exist.
    """
    model = first_model(asym_unit)

    ranges_by_chain: Dict[str, List[ChainRange]] = {}
    for chain_range in ranges:
        if chain_range.chain not in model:
            raise StructureNotFoundError(
                f"Chain {chain_range.chain} not found in {asym_unit.get_id()}"
            )
        ranges_by_chain.setdefault(chain_range.chain, []).append(chain_range)

    chains = []
    for chain_id, chain_ranges in ranges_by_chain.items():
        chain: Chain = model[chain_id]
        if any(r.is_whole_chain for r in chain_ranges):
            chains.append(chain.copy())
            continue

        new_chain = Chain(chain_id)
        for residue in chain:
            res_num = ResidueNumber.from_residue_id(residue.get_id())
            if any(r.contains(res_num) for r in chain_ranges):
                new_chain.add(residue.copy())

        if len(new_chain) == 0:
            LOGGER.warning(
                f"Selection {[str(r) for r in chain_ranges]} of "
                f"{asym_unit.get_id()} contains no residues"
            )
        chains.append(new_chain)

    for chain in chains:
        chain.detach_parent()

    return derived_structure(asym_unit, chains, struct_id=struct_id)


_DEFAULT_CACHE: Optional[StructureCache] = None
_DEFAULT_CACHE_LOCK = threading.Lock()


def default_cache() -> StructureCache:
    """
    :return: A process-wide structure cache, created on first call.
    """
    global _DEFAULT_CACHE
    if _DEFAULT_CACHE is None:
        with _DEFAULT_CACHE_LOCK:
            if _DEFAULT_CACHE is None:
                _DEFAULT_CACHE = StructureCache()
    return _DEFAULT_CACHE


def get_structure(name: str, cache: StructureCache = None) -> Structure:
    """
    Loads a structure by name, e.g. '4HHB.C' or 'BIOL:1fah:2'.
    :param name: Structure name, see :mod:`strucio.identifier`.
    :param cache: The cache to use. None means the default cache.
    :return: The structure.
    """
    cache = cache or default_cache()
    return cache.get_structure(name)


def get_biological_assembly(
    code: str, index: int = 1, cache: StructureCache = None
) -> Structure:
    """
    Reconstructs a biological assembly of a structure.
    :param code: PDB code.
    :param index: Assembly index. 0 returns the asymmetric unit.
    :param cache: The cache to use. None means the default cache.
    :return: The assembly.
    """
    from strucio.assembly import AssemblyResolver

    return AssemblyResolver(cache=cache or default_cache()).get_assembly(code, index)
