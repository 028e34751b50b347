"""
Crystallographic bookkeeping: unit cells, space groups and the conversion of
symmetry operators from fractional (crystal) coordinates to the orthonormal
(Cartesian) frame in which atomic coordinates are given.
"""
from __future__ import annotations

import math
import logging
from math import cos, sin
from math import radians as rad
from typing import List, Tuple, Optional, Sequence
from dataclasses import dataclass

import gemmi
import numpy as np

LOGGER = logging.getLogger(__name__)


def _readonly(m: np.ndarray) -> np.ndarray:
    m = np.array(m, dtype=np.float64)
    m.setflags(write=False)
    return m


def check_affine_matrix(m, name: str = "matrix") -> np.ndarray:
    """
    Validates a 4x4 affine transformation matrix.
    :param m: Something convertible to a 4x4 float array.
    :param name: Name to use in error messages.
    :return: The matrix as a float64 array.
    :raises ValueError: If the matrix is not a finite 4x4 affine matrix.
    """
    m = np.asarray(m, dtype=np.float64)
    if m.shape != (4, 4):
        raise ValueError(f"{name} must be 4x4, got shape {m.shape}")
    if not np.all(np.isfinite(m)):
        raise ValueError(f"{name} contains non-finite values")
    if not np.array_equal(m[3], [0.0, 0.0, 0.0, 1.0]):
        raise ValueError(f"{name} is not affine, last row is {m[3]}")
    return m


class CrystalCell(object):
    """
    Represent a Unit Cell of a crystal.

    Orthonormalization follows the PDB convention (NCODE=1): the a axis is
    along X, b is in the XY plane and c is along Z*.

    Trueblood, K. N. et al. Atomic displacement parameter nomenclature
    report of a subcommittee on atomic displacement parameter nomenclature.
    Acta Crystallogr. Sect. A Found. Crystallogr. 52, 770–781 (1996).
    """

    def __init__(
        self,
        a: float,
        b: float,
        c: float,
        alpha: float,
        beta: float,
        gamma: float,
    ):
        """
        :param a, b, c: Unit cell lengths in Angstroms.
        :param alpha, beta, gamma: Unit cell angles in degrees.
        :raises ValueError: If the parameters don't describe a valid cell.
        """
        params = dict(a=a, b=b, c=c, alpha=alpha, beta=beta, gamma=gamma)
        for name, value in params.items():
            if value is None or not math.isfinite(value):
                raise ValueError(f"Invalid unit cell parameter {name}={value}")
        for name in ("a", "b", "c"):
            if params[name] <= 0:
                raise ValueError(f"Unit cell length {name}={params[name]} must be > 0")
        for name in ("alpha", "beta", "gamma"):
            if not 0 < params[name] < 180:
                raise ValueError(
                    f"Unit cell angle {name}={params[name]} must be in (0, 180)"
                )

        self.a, self.b, self.c = float(a), float(b), float(c)
        self.alpha, self.beta, self.gamma = float(alpha), float(beta), float(gamma)

        cos_alpha, sin_alpha = cos(rad(self.alpha)), sin(rad(self.alpha))
        cos_beta, sin_beta = cos(rad(self.beta)), sin(rad(self.beta))
        cos_gamma, sin_gamma = cos(rad(self.gamma)), sin(rad(self.gamma))

        # Volume
        factor = (
            1
            - cos_alpha**2
            - cos_beta**2
            - cos_gamma**2
            + 2 * cos_alpha * cos_beta * cos_gamma
        )
        if factor <= 0:
            raise ValueError(f"Unit cell angles of {self} don't form a valid cell")
        self.vol = self.a * self.b * self.c * math.sqrt(factor)

        # Reciprocal lengths
        self.a_r = self.b * self.c * sin_alpha / self.vol
        self.b_r = self.c * self.a * sin_beta / self.vol
        self.c_r = self.a * self.b * sin_gamma / self.vol

        # Reciprocal angle alpha*
        cos_alpha_r = (cos_beta * cos_gamma - cos_alpha) / (sin_beta * sin_gamma)

        # M: Transformation from fractional to Cartesian coordinates
        m = np.array(
            [
                [self.a, self.b * cos_gamma, self.c * cos_beta],
                [0, self.b * sin_gamma, -self.c * sin_beta * cos_alpha_r],
                [0, 0, 1 / self.c_r],
            ],
            dtype=np.float64,
        )

        # Fix precision issues, e.g. cos(90) is not exactly zero
        np.round(m, decimals=12, out=m)
        self._m = _readonly(m)
        self._m_inv = _readonly(np.linalg.inv(m))

        m4, m4_inv = np.eye(4), np.eye(4)
        m4[:3, :3], m4_inv[:3, :3] = self._m, self._m_inv
        self._m4, self._m4_inv = _readonly(m4), _readonly(m4_inv)

    @property
    def volume(self) -> float:
        return self.vol

    @property
    def m_orth(self) -> np.ndarray:
        """
        :return: 3x3 matrix converting fractional to orthonormal coordinates.
        """
        return self._m

    @property
    def m_orth_inv(self) -> np.ndarray:
        """
        :return: 3x3 matrix converting orthonormal to fractional coordinates.
        """
        return self._m_inv

    def to_orthonormal(self, frac: np.ndarray) -> np.ndarray:
        """
        :param frac: Fractional coordinates, shape (3,) or (N, 3).
        :return: Orthonormal coordinates with the same shape.
        """
        return np.asarray(frac, dtype=np.float64) @ self._m.T

    def to_fractional(self, xyz: np.ndarray) -> np.ndarray:
        """
        :param xyz: Orthonormal coordinates, shape (3,) or (N, 3).
        :return: Fractional coordinates with the same shape.
        """
        return np.asarray(xyz, dtype=np.float64) @ self._m_inv.T

    def transf_to_orthonormal(self, m: np.ndarray) -> np.ndarray:
        """
        Converts a transformation given in fractional coordinates (crystal
        axes) to the orthonormal basis.
        :param m: A 4x4 affine matrix operating on fractional coordinates.
        :return: A new 4x4 affine matrix operating on orthonormal coordinates.
        """
        m = check_affine_matrix(m, name="crystal operator")
        return self._m4 @ m @ self._m4_inv

    def transf_to_crystal(self, m: np.ndarray) -> np.ndarray:
        """
        Inverse of :meth:`transf_to_orthonormal`.
        """
        m = check_affine_matrix(m, name="orthonormal operator")
        return self._m4_inv @ m @ self._m4

    def __eq__(self, other):
        if not isinstance(other, CrystalCell):
            return NotImplemented
        return self.params == other.params

    def __hash__(self):
        return hash(self.params)

    @property
    def params(self) -> Tuple[float, ...]:
        return self.a, self.b, self.c, self.alpha, self.beta, self.gamma

    def __repr__(self):
        abc = f"(a={self.a:.2f},b={self.b:.2f},c={self.c:.2f})"
        ang = f"(α={self.alpha:.2f},β={self.beta:.2f},γ={self.gamma:.2f})"
        return f"{abc}{ang}"


def _op_matrix(op: gemmi.Op) -> np.ndarray:
    return np.array(op.float_seitz(), dtype=np.float64)


def parse_xyz_operator(text: str) -> np.ndarray:
    """
    Parses a symmetry operator in the 'xyz' notation used by mmCIF files,
    e.g. '-x,y+1/2,-z' or 'x-y,x,z+5/6'.
    :param text: The operator string.
    :return: A 4x4 affine matrix in fractional coordinates.
    :raises ValueError: If the string can't be parsed.
    """
    try:
        op = gemmi.Op(text)
    except (RuntimeError, ValueError) as e:
        raise ValueError(f"Invalid symmetry operator {text!r}: {e}") from e

    # A missing component parses as a zero row
    if op.det_rot() == 0:
        raise ValueError(f"Invalid symmetry operator {text!r}")
    return _op_matrix(op)


class SpaceGroup(object):
    """
    A space group, given by its symbol and its symmetry operators in
    fractional coordinates. Operator 0 is always the identity.
    """

    def __init__(self, symbol: str, operators: Sequence[np.ndarray]):
        """
        :param symbol: Hermann-Mauguin symbol, e.g. 'P 21 21 21'.
        :param operators: 4x4 affine matrices in fractional coordinates.
        The first one must be the identity.
        """
        if not operators:
            raise ValueError(f"Space group {symbol} has no operators")

        ops = tuple(
            _readonly(check_affine_matrix(op, name=f"operator {i} of {symbol}"))
            for i, op in enumerate(operators)
        )
        if not np.array_equal(ops[0], np.eye(4)):
            raise ValueError(f"First operator of space group {symbol} isn't identity")

        self.symbol = symbol
        self._operators = ops

    @classmethod
    def from_xyz(cls, symbol: str, xyz_operators: Sequence[str]) -> SpaceGroup:
        """
        Creates a space group from operators in 'xyz' notation. If the identity
        is present but not first, it's moved to the front.
        """
        return cls.from_matrices(
            symbol, [parse_xyz_operator(op) for op in xyz_operators]
        )

    @classmethod
    def from_matrices(
        cls, symbol: str, matrices: Sequence[np.ndarray]
    ) -> SpaceGroup:
        """
        Creates a space group from 4x4 fractional operators in any order, moving
        the identity to the front.
        """
        operators: List[np.ndarray] = list(matrices)
        for i, op in enumerate(operators):
            if np.array_equal(op, np.eye(4)):
                operators.insert(0, operators.pop(i))
                break
        return cls(symbol, operators)

    @property
    def multiplicity(self) -> int:
        return len(self._operators)

    @property
    def num_operators(self) -> int:
        return len(self._operators)

    @property
    def operators(self) -> Tuple[np.ndarray, ...]:
        return self._operators

    def get_transformation(self, i: int) -> np.ndarray:
        return self._operators[i]

    def __repr__(self):
        return f"SpaceGroup({self.symbol}, {self.multiplicity} operators)"


def space_group_from_symbol(symbol: str) -> Optional[SpaceGroup]:
    """
    Looks up a space group's operators by its symbol in gemmi's space group
    tables.
    :param symbol: Hermann-Mauguin symbol, e.g. 'P 21 21 21' or 'P 1 21 1'.
    :return: The space group, or None if the symbol is unknown.
    """
    sg = gemmi.find_spacegroup_by_name(symbol)
    if sg is None:
        LOGGER.warning(f"Unknown space group symbol {symbol!r}")
        return None
    operators = [_op_matrix(op) for op in sg.operations()]
    return SpaceGroup.from_matrices(symbol, operators)


@dataclass(frozen=True)
class CrystallographicInfo:
    """
    Crystallographic information about a structure: unit cell, space group
    and optionally the NCS operators needed to complete the asymmetric unit.
    NCS operators marked as 'given' in the source are never included.
    """

    cell: Optional[CrystalCell] = None
    space_group: Optional[SpaceGroup] = None
    ncs_operators: Optional[Tuple[np.ndarray, ...]] = None

    @property
    def a(self) -> float:
        return self.cell.a

    @property
    def b(self) -> float:
        return self.cell.b

    @property
    def c(self) -> float:
        return self.cell.c

    @property
    def alpha(self) -> float:
        return self.cell.alpha

    @property
    def beta(self) -> float:
        return self.cell.beta

    @property
    def gamma(self) -> float:
        return self.cell.gamma

    def orthonormal_transforms(self) -> List[np.ndarray]:
        """
        Gets all symmetry operators of the space group (including the
        identity, at index 0) expressed in the orthonormal basis, using the PDB
        axes convention (NCODE=1).
        :return: A list of 4x4 matrices of length equal to the number of
        operators in the space group.
        """
        if self.space_group is None or self.cell is None:
            raise ValueError("Both a unit cell and a space group are required")

        sg = self.space_group
        transforms = [np.array(sg.get_transformation(0))]
        for i in range(1, sg.num_operators):
            transforms.append(self.cell.transf_to_orthonormal(sg.get_transformation(i)))
        return transforms

    def __repr__(self):
        sg = "no SG" if self.space_group is None else self.space_group.symbol
        cell = "no Cell" if self.cell is None else repr(self.cell)
        ncs = "" if not self.ncs_operators else f" - {len(self.ncs_operators)} NCS"
        return f"[{sg} - {cell}{ncs}]"
