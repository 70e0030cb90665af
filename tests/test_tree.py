import msprime
import pytest

from sts_online import Tree
from sts_online.tree import NULL


def test_from_nested_structure(five_taxon_tree):
    tree = five_taxon_tree
    assert tree.num_leaves == 5
    assert tree.num_nodes == 9
    assert sorted(tree.leaf_names) == ["A", "B", "C", "D", "E"]
    assert tree.parent(tree.root) == NULL

    a, b = tree.leaf("A"), tree.leaf("B")
    assert tree.sibling(a) == b
    assert tree.parent(a) == tree.parent(b)
    assert tree.branch_length(a) == pytest.approx(0.1)
    assert tree.children(a) == ()


def test_traversal_orders(five_taxon_tree):
    tree = five_taxon_tree
    preorder = list(tree.nodes())
    postorder = list(tree.nodes(order="postorder"))
    assert preorder[0] == tree.root
    assert postorder[-1] == tree.root
    assert sorted(preorder) == sorted(postorder) == list(range(tree.num_nodes))
    for u in tree.edges():
        assert preorder.index(tree.parent(u)) < preorder.index(u)
        assert postorder.index(tree.parent(u)) > postorder.index(u)
    with pytest.raises(ValueError):
        tree.nodes(order="inorder")


def test_edges_exclude_root(five_taxon_tree):
    edges = five_taxon_tree.edges()
    assert five_taxon_tree.root not in edges
    assert len(edges) == five_taxon_tree.num_nodes - 1


def test_total_branch_length(five_taxon_tree):
    assert five_taxon_tree.total_branch_length == pytest.approx(
        0.1 + 0.2 + 0.05 + 0.15 + 0.12 + 0.07 + 0.08 + 0.3
    )


def test_with_branch_length_keeps_ids(five_taxon_tree):
    a = five_taxon_tree.leaf("A")
    edited = five_taxon_tree.with_branch_length(a, 0.9)
    assert edited.branch_length(a) == 0.9
    assert five_taxon_tree.branch_length(a) == pytest.approx(0.1)
    assert list(edited.nodes()) == list(five_taxon_tree.nodes())


def test_attach(five_taxon_tree):
    tree = five_taxon_tree
    c = tree.leaf("C")
    parent = tree.parent(c)
    new_tree, junction, leaf = tree.attach(c, "Q", 0.05, 0.2)

    assert new_tree.num_leaves == 6
    assert new_tree.leaf("Q") == leaf
    assert new_tree.parent(leaf) == junction
    assert new_tree.parent(c) == junction
    assert new_tree.parent(junction) == parent
    assert new_tree.branch_length(c) == pytest.approx(0.05)
    assert new_tree.branch_length(junction) == pytest.approx(0.10)
    assert new_tree.branch_length(leaf) == pytest.approx(0.2)
    assert new_tree.total_branch_length == pytest.approx(tree.total_branch_length + 0.2)
    # Original unchanged
    assert tree.num_leaves == 5


def test_attach_validation(five_taxon_tree):
    c = five_taxon_tree.leaf("C")
    with pytest.raises(ValueError):
        five_taxon_tree.attach(c, "Q", 0.5, 0.1)
    with pytest.raises(ValueError):
        five_taxon_tree.attach(c, "A", 0.05, 0.1)
    with pytest.raises(ValueError):
        five_taxon_tree.attach(five_taxon_tree.root, "Q", 0.0, 0.1)


def test_invalid_trees():
    # Two roots
    with pytest.raises(ValueError):
        Tree([NULL, NULL], [NULL, NULL], [NULL, NULL], [0, 0], ["a", "b"])
    # Single child
    with pytest.raises(ValueError):
        Tree([NULL, 0], [1, NULL], [NULL, NULL], [0, 0.1], [None, "a"])
    # Negative branch length
    with pytest.raises(ValueError):
        Tree.from_nested((("a", -0.1), ("b", 0.1)))
    # Duplicate leaf names
    with pytest.raises(ValueError):
        Tree.from_nested((("a", 0.1), ("a", 0.1)))


def test_as_newick():
    tree = Tree.from_nested((((("A", 0.1), ("B", 0.2)), 0.05), ("C", 0.3)))
    assert tree.as_newick(precision=2) == "((A:0.10,B:0.20):0.05,C:0.30);"


def test_from_tskit():
    ts = msprime.sim_ancestry(samples=6, ploidy=1, population_size=1, random_seed=5)
    tstree = ts.first()
    tree = Tree.from_tskit(tstree, names=list("abcdef"))

    assert tree.num_leaves == 6
    assert tree.num_nodes == 2 * 6 - 1
    assert tree.total_branch_length == pytest.approx(tstree.total_branch_length)
    for sample, name in zip(ts.samples(), "abcdef"):
        assert tree.branch_length(tree.leaf(name)) == pytest.approx(tstree.branch_length(sample))


def test_from_tskit_default_names():
    ts = msprime.sim_ancestry(samples=3, ploidy=1, population_size=1, random_seed=1)
    tree = Tree.from_tskit(ts.first())
    assert sorted(tree.leaf_names) == ["n0", "n1", "n2"]


def test_with_branch_lengths(five_taxon_tree):
    doubled = five_taxon_tree.with_branch_lengths(five_taxon_tree.branch_lengths * 2)
    assert doubled.total_branch_length == pytest.approx(2 * five_taxon_tree.total_branch_length)
    with pytest.raises(ValueError):
        five_taxon_tree.with_branch_lengths([0.1])
