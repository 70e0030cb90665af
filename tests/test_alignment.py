import numpy as np
import pytest

from sts_online import Alignment, leaf_partials


def test_alignment_basics():
    alignment = Alignment.from_dict({"a": "acgt", "b": "ACGA"})
    assert alignment.names == ["a", "b"]
    assert alignment.num_sites == 4
    assert len(alignment) == 2
    assert "a" in alignment
    assert alignment.sequence("a") == "ACGT"
    with pytest.raises(KeyError):
        alignment.sequence("z")


def test_unequal_lengths_rejected():
    with pytest.raises(ValueError):
        Alignment([("a", "ACGT"), ("b", "ACG")])


def test_partition():
    alignment = Alignment([("a", "AC"), ("b", "AG"), ("c", "TT")])
    reference, query = alignment.partition(["a", "c"])
    assert reference.names == ["a", "c"]
    assert query.names == ["b"]


def test_leaf_partials(jc):
    partials = leaf_partials("AR-N", jc, 2)
    assert partials.shape == (2, 4, 4)
    np.testing.assert_array_equal(partials[0, 0], [1, 0, 0, 0])
    np.testing.assert_array_equal(partials[0, 1], [1, 0, 1, 0])
    np.testing.assert_array_equal(partials[0, 2], [1, 1, 1, 1])
    np.testing.assert_array_equal(partials[0, 3], [1, 1, 1, 1])
    np.testing.assert_array_equal(partials[0], partials[1])


def test_leaf_partials_unknown_symbol(jc):
    with pytest.raises(ValueError):
        leaf_partials("AZ", jc, 1)
