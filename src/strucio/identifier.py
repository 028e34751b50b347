"""
Parsing of textual structure identifiers.

Formal grammar of a structure name::

    name       := pdbId ('.' selector)? | scopId | biol | pdp | url
    selector   := '('? chainRange (',' chainRange)* ')'?
    chainRange := chainId ('_' resNum '-' resNum)?
    pdbId      := [0-9][a-zA-Z0-9]{3}
    chainId    := [a-zA-Z0-9]
    scopId     := 'd' pdbId [a-z_][0-9_]
    biol       := 'BIOL:' pdbId (':' [0-9]+)?
    pdp        := 'PDP:' pdbId [A-Za-z0-9_]+
    resNum     := [-+]?[0-9]+[A-Za-z]?

Examples::

    1TIM          whole structure (asymmetric unit)
    4HHB.C        single chain
    4GCR.A_1-83   one domain, by residue number
    3AA0.A,B      two chains treated as one structure
    d2bq6a1       SCOP domain
    BIOL:1fah     biological assembly 1 of 1fah
    BIOL:1fah:0   asymmetric unit of 1fah

PDB ids are case-insensitive and are normalized to lowercase. Chain ids are
case-sensitive.
"""
from __future__ import annotations

import re
import logging
from typing import Tuple, Union, Optional
from dataclasses import dataclass

LOGGER = logging.getLogger(__name__)

PDB_ID_MIN_LENGTH = 4

_PDB_ID = r"[0-9][a-zA-Z0-9]{3}"
_RES_NUM = r"[-+]?[0-9]+[A-Za-z]?"

PDB_ID_PATTERN = re.compile(rf"^(?P<code>{_PDB_ID})$", re.ASCII)
SELECTION_PATTERN = re.compile(
    rf"^(?P<code>{_PDB_ID})\.(?P<selector>\(.+\)|[^()]+)$", re.ASCII
)
CHAIN_RANGE_PATTERN = re.compile(
    rf"^(?P<chain>[a-zA-Z0-9])(?:_(?P<start>{_RES_NUM})-(?P<end>{_RES_NUM}))?$",
    re.ASCII,
)
RES_NUM_PATTERN = re.compile(r"^(?P<seq>[-+]?[0-9]+)(?P<icode>[A-Za-z]?)$", re.ASCII)
SCOP_ID_PATTERN = re.compile(
    rf"^d(?P<code>{_PDB_ID})(?P<chain>[a-z_])(?P<domain>[0-9_])$", re.ASCII
)
BIOL_PATTERN = re.compile(
    rf"^BIOL:(?P<code>{_PDB_ID})(?::(?P<index>[0-9]+))?$", re.ASCII | re.IGNORECASE
)
BIOL_WITH_SELECTION_PATTERN = re.compile(
    rf"^BIOL:{_PDB_ID}(?::[0-9]+)?\.", re.ASCII | re.IGNORECASE
)
PDP_PATTERN = re.compile(
    rf"^PDP:(?P<token>{_PDB_ID}[A-Za-z0-9_]+)$", re.ASCII | re.IGNORECASE
)
URL_PATTERN = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://\S+$")

BIOL_PREFIX = "BIOL:"
PDP_PREFIX = "PDP:"
DEFAULT_ASSEMBLY_INDEX = 1


class ParseError(ValueError):
    """
    Base class for errors raised when a structure identifier can't be parsed.
    """

    def __init__(self, text: str, reason: str):
        super().__init__(f"Can't parse structure identifier {text!r}: {reason}")
        self.text = text
        self.reason = reason


class MalformedIdentifierError(ParseError):
    """
    The identifier is too short or doesn't match any alternative of the grammar.
    """


class UnsupportedIdentifierError(ParseError):
    """
    The identifier is well-formed but combines features that can't be resolved
    together, e.g. a biological assembly with a chain sub-selection.
    """


@dataclass(frozen=True, order=True)
class ResidueNumber:
    """
    A residue sequence number with an optional insertion code.
    Ordered by sequence number first; a blank insertion code comes before
    any letter.
    """

    seq: int
    icode: str = ""

    def __post_init__(self):
        # Biopython represents a missing insertion code with a space
        object.__setattr__(self, "icode", (self.icode or "").strip())

    @classmethod
    def parse(cls, text: str) -> ResidueNumber:
        match = RES_NUM_PATTERN.match(text)
        if not match:
            raise MalformedIdentifierError(text, "invalid residue number")
        return cls(int(match.group("seq")), match.group("icode"))

    @classmethod
    def from_residue_id(cls, residue_id: tuple) -> ResidueNumber:
        """
        :param residue_id: A Biopython residue id (hetflag, seq, icode).
        """
        _, seq, icode = residue_id
        return cls(int(seq), icode)

    def __str__(self):
        return f"{self.seq}{self.icode}"


@dataclass(frozen=True)
class ChainRange:
    """
    A chain, optionally restricted to an inclusive range of residues.
    """

    chain: str
    start: Optional[ResidueNumber] = None
    end: Optional[ResidueNumber] = None

    def __post_init__(self):
        if (self.start is None) != (self.end is None):
            raise ValueError("Both or neither of start and end must be given")

    @property
    def is_whole_chain(self) -> bool:
        return self.start is None

    def contains(self, residue_number: ResidueNumber) -> bool:
        if self.is_whole_chain:
            return True
        return self.start <= residue_number <= self.end

    def __str__(self):
        if self.is_whole_chain:
            return self.chain
        return f"{self.chain}_{self.start}-{self.end}"


@dataclass(frozen=True)
class WholeEntry:
    code: str

    def __str__(self):
        return self.code


@dataclass(frozen=True)
class ChainSelection:
    code: str
    chains: Tuple[str, ...]

    @property
    def ranges(self) -> Tuple[ChainRange, ...]:
        return tuple(ChainRange(chain) for chain in self.chains)

    def __str__(self):
        return f"{self.code}.{','.join(self.chains)}"


@dataclass(frozen=True)
class RangeSelection:
    """
    One or more chains of which at least one is restricted to a residue range.
    """

    code: str
    ranges: Tuple[ChainRange, ...]

    @property
    def chain(self) -> str:
        return self.ranges[0].chain

    @property
    def start(self) -> Optional[ResidueNumber]:
        return self.ranges[0].start

    @property
    def end(self) -> Optional[ResidueNumber]:
        return self.ranges[0].end

    def __str__(self):
        return f"{self.code}.{','.join(str(r) for r in self.ranges)}"


@dataclass(frozen=True)
class ScopDomain:
    domain_id: str

    @property
    def code(self) -> str:
        return self.domain_id[1:5].lower()

    @property
    def chain(self) -> Optional[str]:
        """
        :return: The chain encoded in the domain id, or None if the domain
        spans all chains ('_').
        """
        chain = self.domain_id[5]
        return None if chain == "_" else chain

    def __str__(self):
        return self.domain_id


@dataclass(frozen=True)
class BiologicalAssemblyId:
    code: str
    index: int = DEFAULT_ASSEMBLY_INDEX

    def __str__(self):
        return f"{BIOL_PREFIX}{self.code}:{self.index}"


@dataclass(frozen=True)
class DomainPredictionId:
    token: str

    @property
    def code(self) -> str:
        return self.token[:4].lower()

    def __str__(self):
        return f"{PDP_PREFIX}{self.token}"


@dataclass(frozen=True)
class UrlIdentifier:
    url: str

    def __str__(self):
        return self.url


Identifier = Union[
    WholeEntry,
    ChainSelection,
    RangeSelection,
    ScopDomain,
    BiologicalAssemblyId,
    DomainPredictionId,
    UrlIdentifier,
]


def _parse_selector(text: str, code: str, selector: str) -> Identifier:
    if selector.startswith("("):
        selector = selector[1:-1]

    ranges = []
    for token in selector.split(","):
        match = CHAIN_RANGE_PATTERN.match(token.strip())
        if not match:
            raise MalformedIdentifierError(text, f"invalid chain selector {token!r}")

        chain, start, end = match.group("chain", "start", "end")
        if start is None:
            ranges.append(ChainRange(chain))
            continue

        start, end = ResidueNumber.parse(start), ResidueNumber.parse(end)
        if end < start:
            raise MalformedIdentifierError(
                text, f"residue range {start}-{end} is reversed"
            )
        ranges.append(ChainRange(chain, start, end))

    if all(r.is_whole_chain for r in ranges):
        return ChainSelection(code, tuple(r.chain for r in ranges))
    return RangeSelection(code, tuple(ranges))


def parse_identifier(text: str) -> Identifier:
    """
    Parses a structure name into a typed identifier.
    :param text: The structure name, see the module docs for the grammar.
    :return: Exactly one of the identifier variants.
    :raises MalformedIdentifierError: If the name is too short or doesn't
    match the grammar.
    :raises UnsupportedIdentifierError: If a biological assembly is requested
    together with a sub-selection.
    """
    if text is None:
        raise MalformedIdentifierError(str(text), "no identifier given")

    name = text.strip()
    if len(name) < PDB_ID_MIN_LENGTH:
        raise MalformedIdentifierError(
            text, f"shorter than the minimal length of {PDB_ID_MIN_LENGTH}"
        )

    if URL_PATTERN.match(name):
        return UrlIdentifier(name)

    if name.upper().startswith(BIOL_PREFIX):
        if BIOL_WITH_SELECTION_PATTERN.match(name):
            raise UnsupportedIdentifierError(
                text, "sub-selections of biological assemblies are not supported"
            )
        match = BIOL_PATTERN.match(name)
        if not match:
            raise MalformedIdentifierError(text, "invalid biological assembly id")
        index = match.group("index")
        index = DEFAULT_ASSEMBLY_INDEX if index is None else int(index)
        return BiologicalAssemblyId(match.group("code").lower(), index)

    if name.upper().startswith(PDP_PREFIX):
        match = PDP_PATTERN.match(name)
        if not match:
            raise MalformedIdentifierError(text, "invalid PDP domain id")
        return DomainPredictionId(match.group("token"))

    match = SCOP_ID_PATTERN.match(name)
    if match:
        return ScopDomain(name)

    match = PDB_ID_PATTERN.match(name)
    if match:
        return WholeEntry(match.group("code").lower())

    match = SELECTION_PATTERN.match(name)
    if match:
        code = match.group("code").lower()
        return _parse_selector(text, code, match.group("selector"))

    raise MalformedIdentifierError(text, "doesn't match any known identifier format")


def try_parse_identifier(text: str) -> Optional[Identifier]:
    """
    Like :func:`parse_identifier`, but returns None for names which can't be
    parsed instead of raising.
    """
    try:
        return parse_identifier(text)
    except ParseError as e:
        LOGGER.warning(str(e))
        return None
