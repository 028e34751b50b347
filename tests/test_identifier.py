import random
import string

import pytest

from strucio.identifier import (
    ParseError,
    ChainRange,
    ScopDomain,
    WholeEntry,
    UrlIdentifier,
    ResidueNumber,
    ChainSelection,
    RangeSelection,
    DomainPredictionId,
    BiologicalAssemblyId,
    MalformedIdentifierError,
    UnsupportedIdentifierError,
    parse_identifier,
    try_parse_identifier,
)


def _random_pdb_code() -> str:
    return str.join(
        "",
        [str(random.randrange(10))]
        + random.choices(string.ascii_letters + string.digits, k=3),
    )


class TestWholeEntry:
    @pytest.fixture(autouse=True)
    def setup_fixture(self):
        self.n = 100

    def test_round_trip(self):
        for _ in range(self.n):
            code = _random_pdb_code()
            identifier = parse_identifier(code)
            assert isinstance(identifier, WholeEntry), code
            assert str(identifier) == code.lower(), code
            assert parse_identifier(str(identifier)) == identifier, code

    @pytest.mark.parametrize("code", ["1TIM", "1tim", "1TiM", " 1tim "])
    def test_case_normalized(self, code):
        assert parse_identifier(code) == WholeEntry("1tim")


class TestChainSelection:
    def test_single_chain(self):
        identifier = parse_identifier("4HHB.C")
        assert identifier == ChainSelection("4hhb", ("C",))
        assert str(identifier) == "4hhb.C"

    def test_chain_case_preserved(self):
        assert parse_identifier("4HHB.c").chains == ("c",)

    def test_multiple_chains_order_preserved(self):
        identifier = parse_identifier("3AA0.B,A")
        assert identifier == ChainSelection("3aa0", ("B", "A"))
        assert [r.chain for r in identifier.ranges] == ["B", "A"]
        assert all(r.is_whole_chain for r in identifier.ranges)

    def test_parenthesized(self):
        assert parse_identifier("3aa0.(A,B)") == ChainSelection("3aa0", ("A", "B"))

    def test_round_trip(self):
        identifier = parse_identifier("3aa0.A,B")
        assert parse_identifier(str(identifier)) == identifier


class TestRangeSelection:
    def test_single_range(self):
        identifier = parse_identifier("4GCR.A_1-83")
        assert isinstance(identifier, RangeSelection)
        assert identifier.code == "4gcr"
        assert identifier.chain == "A"
        assert identifier.start == ResidueNumber(1)
        assert identifier.end == ResidueNumber(83)
        assert str(identifier) == "4gcr.A_1-83"

    def test_negative_and_insertion_codes(self):
        identifier = parse_identifier("1abc.A_-5-10B")
        assert identifier.start == ResidueNumber(-5)
        assert identifier.end == ResidueNumber(10, "B")

    def test_mixed_chains_and_ranges(self):
        identifier = parse_identifier("1abc.A_1-10,B,C_+3-7")
        assert isinstance(identifier, RangeSelection)
        assert identifier.ranges == (
            ChainRange("A", ResidueNumber(1), ResidueNumber(10)),
            ChainRange("B"),
            ChainRange("C", ResidueNumber(3), ResidueNumber(7)),
        )

    def test_round_trip(self):
        identifier = parse_identifier("1abc.A_1-10,B")
        assert parse_identifier(str(identifier)) == identifier

    def test_reversed_range(self):
        with pytest.raises(MalformedIdentifierError):
            parse_identifier("4gcr.A_83-1")

    @pytest.mark.parametrize(
        "text", ["4gcr.A_1", "4gcr.A_1-", "4gcr.AB", "4gcr.A,", "4gcr.A_x-3", "4gcr."]
    )
    def test_malformed_selectors(self, text):
        with pytest.raises(MalformedIdentifierError):
            parse_identifier(text)


class TestResidueNumber:
    def test_ordering(self):
        numbers = [
            ResidueNumber(10),
            ResidueNumber(2, "B"),
            ResidueNumber(-1),
            ResidueNumber(2),
            ResidueNumber(2, "A"),
        ]
        assert sorted(numbers) == [
            ResidueNumber(-1),
            ResidueNumber(2),
            ResidueNumber(2, "A"),
            ResidueNumber(2, "B"),
            ResidueNumber(10),
        ]

    def test_from_residue_id(self):
        assert ResidueNumber.from_residue_id((" ", 52, " ")) == ResidueNumber(52)
        assert ResidueNumber.from_residue_id(("H_HEM", 7, "A")) == ResidueNumber(7, "A")

    def test_chain_range_contains(self):
        r = ChainRange("A", ResidueNumber(1), ResidueNumber(3))
        assert r.contains(ResidueNumber(1))
        assert r.contains(ResidueNumber(2, "A"))
        assert r.contains(ResidueNumber(3))
        assert not r.contains(ResidueNumber(3, "A"))
        assert not r.contains(ResidueNumber(0))
        assert ChainRange("A").contains(ResidueNumber(1000))

    def test_chain_range_needs_both_ends(self):
        with pytest.raises(ValueError):
            ChainRange("A", start=ResidueNumber(1))


class TestDomains:
    def test_scop(self):
        identifier = parse_identifier("d2bq6a1")
        assert identifier == ScopDomain("d2bq6a1")
        assert identifier.code == "2bq6"
        assert identifier.chain == "a"
        assert str(identifier) == "d2bq6a1"

    def test_scop_all_chains(self):
        identifier = parse_identifier("d1tim__")
        assert isinstance(identifier, ScopDomain)
        assert identifier.chain is None

    def test_pdp(self):
        identifier = parse_identifier("PDP:1ABCA1")
        assert identifier == DomainPredictionId("1ABCA1")
        assert identifier.code == "1abc"
        assert str(identifier) == "PDP:1ABCA1"

    def test_pdp_malformed(self):
        with pytest.raises(MalformedIdentifierError):
            parse_identifier("PDP:1abc")


class TestBiologicalAssembly:
    def test_default_index(self):
        identifier = parse_identifier("BIOL:1fah")
        assert identifier == BiologicalAssemblyId("1fah", 1)

    @pytest.mark.parametrize("index", [0, 1, 2, 12])
    def test_index(self, index):
        identifier = parse_identifier(f"BIOL:1FAH:{index}")
        assert identifier == BiologicalAssemblyId("1fah", index)
        assert parse_identifier(str(identifier)) == identifier

    def test_prefix_case_insensitive(self):
        assert parse_identifier("biol:1fah:2") == BiologicalAssemblyId("1fah", 2)

    @pytest.mark.parametrize("text", ["BIOL:1fah.A", "BIOL:1fah:1.A_1-10"])
    def test_sub_selection_unsupported(self, text):
        with pytest.raises(UnsupportedIdentifierError):
            parse_identifier(text)

    @pytest.mark.parametrize("text", ["BIOL:1fa", "BIOL:1fah:x", "BIOL:1fah:"])
    def test_malformed(self, text):
        with pytest.raises(MalformedIdentifierError):
            parse_identifier(text)


class TestMalformed:
    @pytest.mark.parametrize("text", ["X", "", "1ab", "   "])
    def test_too_short(self, text):
        with pytest.raises(MalformedIdentifierError) as e:
            parse_identifier(text)
        assert isinstance(e.value, ParseError)
        assert isinstance(e.value, ValueError)

    @pytest.mark.parametrize("text", ["abcd", "12345", "1abc:A", "1abc-A", "d1abc", "1ab$"])
    def test_no_matching_format(self, text):
        with pytest.raises(MalformedIdentifierError):
            parse_identifier(text)

    def test_none(self):
        with pytest.raises(MalformedIdentifierError):
            parse_identifier(None)

    def test_try_parse(self):
        assert try_parse_identifier("X") is None
        assert try_parse_identifier("BIOL:1fah.A") is None
        assert try_parse_identifier("4hhb.C") == ChainSelection("4hhb", ("C",))


class TestUrl:
    @pytest.mark.parametrize(
        "url",
        [
            "https://files.rcsb.org/download/4hhb.cif.gz",
            "file:///tmp/structures/1abc.pdb",
        ],
    )
    def test_url(self, url):
        identifier = parse_identifier(url)
        assert identifier == UrlIdentifier(url)
        assert str(identifier) == url
