"""Tree class for bayesbart.

This module defines the Tree class that extends treelib's Tree to support the
operations needed by the ensemble sampler, such as applying and removing
splits, rerouting the training rows after a rule change and computing the
contribution of the tree to the fit.
"""

import numpy as np
from treelib import Tree as TreelibTree
from typing import Self, Sequence
from copy import deepcopy
from .node import Node
from .node_data import NodeData
from .mytyping import NDArrayFloat, NDArrayInt
from .exceptions import InvalidTreeError


class Tree(TreelibTree):
    """
    One regression tree of the ensemble, stored in a treelib arena.

    Besides the structural queries used to pick proposal candidates, it keeps
    the routed training rows of every node consistent with the split rules.

    Attributes
    ----------
    id_counter : int
        Next node identifier.
    rng : np.random.Generator
        Generator shared with the nodes and the sampler.
    node_min_size : int
        Smallest admissible number of routed rows.
    debug : bool
        Enables assertions on the structure.
    """
    node_class = Node
    def __init__(self, root_node_data: NodeData, rng: np.random.Generator,
                 node_min_size: int, debug: bool):
        super().__init__(node_class=self.node_class)
        self.id_counter: int = 0
        self.rng = rng
        self.node_min_size = node_min_size
        self.debug = debug

        self.add_node(root_node_data, is_l=False)

    def add_node(self, data: NodeData, is_l: bool, parent: Node | None = None) -> Node:
        node = self.node_class(self.id_counter, is_l=is_l, data=data, rng=self.rng, debug=self.debug)
        node.depth = 0 if parent is None else parent.depth + 1
        super().add_node(node, parent)
        self.id_counter += 1
        return node

    def get_leaves(self) -> list[Node]:
        """
        Leaves of the tree, in treelib traversal order.

        Returns
        -------
        list
            A list of leaf nodes.
        """
        return self.leaves()

    def get_n_leaves(self) -> int:
        return len(self.get_leaves())

    def get_growable_leaves(self) -> list[Node]:
        """
        Return the leaves that have enough observations and at least one achievable split.

        Returns
        -------
        list
            A list of leaf nodes.
        """
        return [leaf for leaf in self.get_leaves() if leaf.can_split()]

    def get_depth(self) -> int:
        return max(leaf.depth for leaf in self.get_leaves())

    def __deepcopy__(self, memo):
        return self.copy(memo=memo)

    def copy(self, memo: dict|None = None) -> 'Tree':
        '''Deep copy the tree with all node info. The training matrix is shared, never copied.'''
        if memo is None:
            memo = {}
        cls = self.__class__
        result = cls.__new__(cls)
        for k, v in self.__dict__.items():
            if k == '_nodes':
                _nodes = {}
                for nid in self._nodes:
                    _nodes[nid] = self._nodes[nid].copy(memo=memo)
                setattr(result, k, _nodes)
            elif k == 'rng':
                setattr(result, k, v)
            else:
                setattr(result, k, deepcopy(v, memo))
        return result

    def is_valid(self) -> bool:
        """
        Validate structure, routing and depths of every node.

        Every decision node must have a left and a right child that partition
        its rows according to its rule, every leaf must have an empty rule,
        every node must hold at least node_min_size rows and depths must be
        consistent with the structure.

        Returns
        -------
        bool
            True, assertion failures are re-raised with the offending node.
        """
        def is_valid_node(node: Node) -> bool:
            try:
                return _is_valid_node(node)
            except Exception as e:
                node._gen_tags()
                raise Exception(f'Error in node {node.tag}, {type(e).__name__}: {e}') from e

        def _is_valid_node(node: Node) -> bool:
            children = self.get_children(node)
            if not node.is_leaf():
                # decision nodes have exactly two children
                assert (len(children) == 2)

                # ordered left then right
                l_child, r_child = children
                assert l_child.is_l and not r_child.is_l

                # the children partition the rows of the node according to the rule
                split_var, split_val = node.get_split_info()
                left_idx, right_idx = node.get_data_split(split_var, split_val)
                assert np.array_equal(left_idx, l_child.get_idx())
                assert np.array_equal(right_idx, r_child.get_idx())
                assert l_child.get_nobs() + r_child.get_nobs() == node.get_nobs()
                assert np.intersect1d(l_child.get_idx(), r_child.get_idx()).size == 0
            else:
                assert (len(children) == 0)
                assert node.is_split_rule_empty()

            # node observations must be >= min
            assert node.get_nobs() >= self.node_min_size

            if node.is_root():
                assert node.depth == 0
            else:
                parent = self.get_parent(node)
                # depth follows the parent
                assert node.depth == 1 + parent.depth
                assert self.level(node.id) == node.depth

            return True

        res = list(filter(is_valid_node, self.all_nodes_itr()))
        return len(self.nodes) == len(res)

    def apply_split(self, node: Node, split_var: int, split_val: float, l_leaf_mu: float, r_leaf_mu: float):
        """
        Turn a leaf into a decision node with two new leaves.

        Parameters
        ----------
        node : Node
            The leaf node to be split.
        split_var : int
            The variable to split on.
        split_val : float
            The threshold.
        l_leaf_mu : float
            Value of the left child.
        r_leaf_mu : float
            Value of the right child.

        Raises
        ------
        InvalidTreeError
            If a child would receive fewer than node_min_size rows.
            The tree is not modified in that case.
        """
        if self.debug:
            assert node.is_leaf()

        # find left and right subsets, fails before touching the tree
        node_data_l, node_data_r = node.get_split_data(split_var, split_val, l_leaf_mu, r_leaf_mu)
        node.update_split_info(split_var, split_val)

        self.add_node(data=node_data_l, is_l=True, parent=node)
        self.add_node(data=node_data_r, is_l=False, parent=node)

    def collapse(self, node: Node):
        """
        Turn a decision node whose children are both leaves into a leaf.

        Parameters
        ----------
        node : Node
            The node to collapse.
        """
        children = self.get_children(node)
        if self.debug:
            assert len(children) == 2 and children[0].is_leaf() and children[1].is_leaf()
        for child in children:
            self.remove_node(child)
        node.reset_split_info()

    def get_node(self, node_id: int) -> Node:
        if (node := super().get_node(node_id)) is None:
            raise ValueError(f'Node {node_id} does not exist')
        return node

    def get_root(self) -> Node:
        root = self.get_node(self.root)
        if self.debug:
            if not root.is_root():
                raise ValueError('Root node is not actually root')
        return root

    def is_stump(self) -> bool:
        return len(self.nodes) == 1

    def get_children(self, node: Node|int) -> list[Node]:
        """
        Get the children of the specified node, ordered as left then right.

        Parameters
        ----------
        node : Node or int
            The node or its identifier.

        Returns
        -------
        list
            A list of child nodes, empty for leaves.
        """
        if isinstance(node, Node):
            res =  self.children(node.id)
        else:
            res = self.children(node)
        if len(res) == 0:
            return []
        if self.debug:
            assert len(res) == 2
        if not res[0].is_l:
            res[0], res[1] = res[1], res[0]
        return res

    def remove_node(self, node: Node|int) -> int:
        if isinstance(node, Node):
            return super().remove_node(node.id)
        else:
            return super().remove_node(node)

    def get_parent(self, node: Node|int) -> Node:
        if isinstance(node, Node):
            res =  self.parent(node.id)
        else:
            res = self.parent(node)
        if res is None:
            raise ValueError('Node has no parent')
        return res

    def get_sibling(self, node: Node|int) -> Node:
        if isinstance(node, Node):
            res =  self.siblings(node.id)
        else:
            res = self.siblings(node)
        if len(res) != 1:
            raise ValueError(f'Wrong number of siblings for Node {str(node)}: {len(res)}')
        return res[0]

    def get_parents_with_two_leaves(self) -> list[Node]:
        """
        Get all decision nodes that have two leaves as children.

        Returns
        -------
        list
            Candidates of the prune move.
        """
        def filter_f(node: Node) -> bool:
            children = self.get_children(node)
            if len(children) == 0:
                return False
            return children[0].is_leaf() and children[1].is_leaf()

        return list(self.filter_nodes(filter_f))

    def get_nonleaf_nodes(self, filter_root: bool = False) -> list[Node]:
        def filter_f(node: Node) -> bool:
            if node.is_root():
                if filter_root:
                    return False
            return not node.is_leaf()
        return list(self.filter_nodes(filter_f))

    def get_subtree_nodes(self, node: Node) -> list[Node]:
        """
        Return the node and all its descendants, parents before children.
        """
        out = [node]
        for child in self.get_children(node):
            out.extend(self.get_subtree_nodes(child))
        return out

    def get_subtree_leaves(self, node: Node) -> list[Node]:
        return [n for n in self.get_subtree_nodes(node) if n.is_leaf()]

    def check_split_struct(self, node: Node):
        """
        Reject rule combinations in the subtree of node that leave a branch
        without any achievable value.

        Only the ranges of the variables are tracked, so passing the check
        does not guarantee that the rerouting will succeed.

        Parameters
        ----------
        node : Node
            Root of the checked subtree.

        Raises
        ------
        InvalidTreeError
            If a rule falls outside the range allowed by its ancestors.
        """
        # Intervals are the [min, max] range of each variable compatible with the rules
        # met so far. This can be violated by a swap or a change, e.g. x1 <= 3 then x1 > 5.
        def _check_struct_rec(node: Node, d: dict[int, tuple[float, float]]):
            if node.is_leaf():
                return
            split_var, split_val = node.get_split_info()
            lo, hi = d[split_var]
            if split_val < lo or split_val >= hi:
                raise InvalidTreeError('Empty split')

            d_l = {k: v for k, v in d.items()}
            d_l[split_var] = (lo, min(hi, split_val))
            d_r = {k: v for k, v in d.items()}
            d_r[split_var] = (max(lo, split_val), hi)

            l_child, r_child = self.get_children(node)
            _check_struct_rec(l_child, d_l)
            _check_struct_rec(r_child, d_r)

        Xn = node._data.X[node.get_idx()]
        global_d = dict(enumerate(zip(Xn.min(axis=0), Xn.max(axis=0))))
        _check_struct_rec(node, global_d)

    def update_subtree_data(self, node: Node):
        """
        Reroute the rows of all descendants of a given node after its rules changed.

        Parameters
        ----------
        node : Node
            Node whose rule changed.

        Raises
        ------
        InvalidTreeError
            If a descendant ends up with less than node_min_size rows. The
            subtree is then partially updated and must be restored by the caller.
        """
        self.check_split_struct(node)

        def _update_split_rec(node: Node):
            if node.is_leaf():
                return

            left_idx, right_idx = node.get_data_split()

            l_child, r_child = self.get_children(node)
            l_child.update_split_data(left_idx)
            r_child.update_split_data(right_idx)

            _update_split_rec(l_child)
            _update_split_rec(r_child)

        _update_split_rec(node)

    def update_split(self, node: Node, split_var: int, split_val: float):
        """
        Change the splitting rule for the current node. Update the rows of all the descendants recursively.

        Parameters
        ----------
        node : Node
            The node to update.
        split_var : int
            The new splitting variable.
        split_val : float
            The new threshold.
        """
        node.update_split_info(split_var, split_val)
        self.update_subtree_data(node)

    def get_fit(self, n: int) -> NDArrayFloat:
        """
        Contribution of the tree to the fit of the n training rows.

        Returns
        -------
        NDArrayFloat
            The leaf value reached by each training row.
        """
        fit = np.zeros(n)
        for leaf in self.get_leaves():
            idx, mu = leaf.get_preds()
            fit[idx] = mu
        return fit

    def count_splits(self, p: int) -> NDArrayInt:
        """
        Number of decision nodes splitting on each of the p variables.
        """
        split_vars = [node.get_split_info()[0] for node in self.get_nonleaf_nodes()]
        return np.bincount(np.array(split_vars, dtype=int), minlength=p)

    def show(self, names: Sequence[str] | None = None):
        """
        Print the tree with one line per node, rules named after names if given.

        Returns
        -------
        str
            The printed text.
        """
        for node in self.all_nodes_itr():
            node._gen_tags(names)
        res = str(self)
        print(res)
        return res

    def is_equal(self, other: Self, hard: int = 0) -> bool:
        """
        Compare two trees node by node, with increasing strictness.

        Hard = 0 checks they have the same structure and same splitting
        variables. Hard = 1 additionally checks the thresholds. Hard = 2
        expects the same rows in every node. Hard = 3 expects equality also
        for leaf values.

        Parameters
        ----------
        other : Tree
            The tree to compare with.
        hard : int, optional
            Level of strictness (default 0).

        Returns
        -------
        bool
            True if no difference was found at the requested level.
        """
        def _check_nodes(node1: Node, node2: Node) -> bool:
            c1 = self.get_children(node1)
            c2 = other.get_children(node2)
            assert len(c1) == len(c2)

            if node1.is_leaf():
                if hard >= 2:
                    assert np.array_equal(node1.get_idx(), node2.get_idx())
                if hard >= 3:
                    assert np.isclose(node1.get_params(), node2.get_params())
            else:
                svar1, sval1 = node1.get_split_info()
                svar2, sval2 = node2.get_split_info()
                assert svar1 == svar2
                if hard >= 1:
                    assert np.isclose(sval1, sval2)
                if hard >= 2:
                    assert np.array_equal(node1.get_idx(), node2.get_idx())
            return all(map(_check_nodes, c1, c2))

        if len(self.nodes) != len(other.nodes):
            return False
        try:
            return _check_nodes(self.get_root(), other.get_root())
        except AssertionError:
            return False
