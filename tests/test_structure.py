import numpy as np
import pytest
from Bio.PDB.Chain import Chain
from Bio.PDB.Model import Model
from Bio.PDB.Structure import Structure

from strucio.xtal import CrystalCell, parse_xyz_operator
from strucio.structure import (
    Transformation,
    StructureMetadata,
    BiologicalAssembly,
    get_metadata,
    set_metadata,
    derived_structure,
    keep_first_model,
)

ROT_Z_90 = np.array([[0, -1, 0], [1, 0, 0], [0, 0, 1]], dtype=float)


class TestTransformation:
    def test_from_rotation_translation(self):
        t = Transformation.from_rotation_translation("2", ["A"], ROT_Z_90, [1, 2, 3])
        np.testing.assert_array_equal(t.rotation, ROT_Z_90)
        np.testing.assert_array_equal(t.translation, [1, 2, 3])
        np.testing.assert_array_equal(t.matrix[3], [0, 0, 0, 1])
        assert t.chain_ids == ("A",)
        assert not t.is_identity

    def test_apply(self):
        t = Transformation.from_rotation_translation("2", ["A"], ROT_Z_90, [1, 2, 3])
        coords = np.array([[1.0, 0.0, 0.0], [0.0, 2.0, -1.0]])
        np.testing.assert_allclose(t.apply(coords), [[1, 3, 3], [-1, 2, 2]])

    def test_identity(self):
        assert Transformation("1", ("A",), np.eye(4)).is_identity

    def test_matrix_is_read_only_copy(self):
        m = np.eye(4)
        t = Transformation("1", ("A",), m)
        m[0, 3] = 5.0
        assert t.is_identity
        with pytest.raises(ValueError):
            t.matrix[0, 3] = 5.0

    @pytest.mark.parametrize(
        "matrix",
        [np.eye(3), np.ones((4, 4)), np.full((4, 4), np.nan), [[1, 2], [3, 4]]],
    )
    def test_invalid_matrix(self, matrix):
        with pytest.raises(ValueError):
            Transformation("1", ("A",), matrix)

    def test_eq_and_hash(self):
        t1 = Transformation("1", ["A", "B"], np.eye(4))
        t2 = Transformation("1", ("A", "B"), np.eye(4).tolist())
        t3 = Transformation("1", ("A",), np.eye(4))
        assert t1 == t2
        assert hash(t1) == hash(t2)
        assert t1 != t3

    def test_from_crystal_operator(self):
        cell = CrystalCell(20, 30, 40, 90, 100, 90)
        frac_op = parse_xyz_operator("-x,y+1/2,-z")
        t = Transformation.from_crystal_operator("2", ["A"], cell, frac_op)
        np.testing.assert_allclose(t.matrix, cell.transf_to_orthonormal(frac_op))
        np.testing.assert_allclose(t.translation, [0, 15, 0], atol=1e-9)


class TestBiologicalAssembly:
    def test_chain_ids(self):
        assembly = BiologicalAssembly(
            index=1,
            transformations=[
                Transformation("1", ("A", "B"), np.eye(4)),
                Transformation("2", ("A", "C"), np.eye(4)),
            ],
        )
        assert assembly.chain_ids == ("A", "B", "C")
        assert assembly.num_chains == 4
        assert isinstance(assembly.transformations, tuple)


class TestStructureMetadata:
    def test_assemblies_sorted_and_read_only(self):
        metadata = StructureMetadata(
            "1abc",
            bio_assemblies={
                2: BiologicalAssembly(2, ()),
                1: BiologicalAssembly(1, ()),
            },
        )
        assert list(metadata.bio_assemblies) == [1, 2]
        assert metadata.num_bio_assemblies == 2
        with pytest.raises(TypeError):
            metadata.bio_assemblies[3] = BiologicalAssembly(3, ())

    def test_index_zero_reserved(self):
        with pytest.raises(ValueError):
            StructureMetadata("1abc", bio_assemblies={0: BiologicalAssembly(0, ())})

    def test_default_metadata(self):
        struct = Structure("1ABC")
        metadata = get_metadata(struct)
        assert metadata.pdb_id == "1abc"
        assert metadata.num_bio_assemblies == 0

    def test_set_metadata(self):
        struct = Structure("1abc")
        metadata = StructureMetadata("1abc", title="foo")
        assert set_metadata(struct, metadata) is struct
        assert get_metadata(struct) is metadata


class TestDerivedStructure:
    def test_inherits_header_not_chains(self):
        template = Structure("1abc")
        template.header = {"name": "template"}
        set_metadata(template, StructureMetadata("1abc", title="template"))
        model = Model(0)
        template.add(model)
        model.add(Chain("A"))

        struct = derived_structure(template, [Chain("X"), Chain("Y")], "1abc_x")
        assert struct.get_id() == "1abc_x"
        assert [c.get_id() for c in struct[0]] == ["X", "Y"]
        assert struct.header == template.header
        assert struct.header is not template.header
        assert get_metadata(struct) is get_metadata(template)
        assert [c.get_id() for c in template[0]] == ["A"]

    def test_keep_first_model(self):
        struct = Structure("1abc")
        for i in range(3):
            struct.add(Model(i))
        keep_first_model(struct)
        assert [m.get_id() for m in struct] == [0]
