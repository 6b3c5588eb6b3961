import copy
import warnings

import numpy as np
import pandas as pd
import pytest
from scipy.stats import chi2

from bayesbart import (
    BART,
    BARTPrior,
    Posterior,
    run_chains,
    predict,
    predict_draws,
    predict_raster,
    partial_dependence,
    sim_linear,
    sim_presence,
    drop_incomplete,
    InvalidTreeError,
    InvalidPriorParameters,
    MissingCovariate,
    NonConvergenceWarning,
)
from bayesbart.tree import Tree
from bayesbart.node import Node
from bayesbart.node_data import NodeData
from bayesbart.ensemble import TreeSnapshot, partial_residual
from bayesbart import utils

# =============================================================================
# Fixtures
# =============================================================================
@pytest.fixture
def linear_data():
    rng = np.random.default_rng(42)
    X, y = sim_linear(100, rng)
    return X, y, rng

@pytest.fixture
def presence_data():
    rng = np.random.default_rng(42)
    X, y, prob = sim_presence(200, rng, p=4)
    return X, y, rng

@pytest.fixture(scope='module')
def linear_fit():
    rng = np.random.default_rng(7)
    X, y = sim_linear(100, rng)
    bart = BART(X, y, m=20, iters=300, burnin=100, seed=7)
    post = bart.run()
    return X, y, bart, post

def simple_node_data(n=10, node_min_size=2):
    X = np.arange(1, n + 1, dtype=float).reshape(-1, 1)
    cutpoints = [utils.quantile_cutpoints(X[:, 0], 100)]
    return NodeData(X=X, idx=np.arange(n), cutpoints=cutpoints, rng=np.random.default_rng(42),
                    debug=True, node_min_size=node_min_size)

def create_simple_tree():
    """Helper: create a stump on x = 1..10."""
    return Tree(root_node_data=simple_node_data(), rng=np.random.default_rng(42), node_min_size=2, debug=True)

# =============================================================================
# Tests for utils
# =============================================================================
def test_sim_linear():
    X, y = sim_linear(50, np.random.default_rng(1), p=3)
    assert isinstance(X, pd.DataFrame) and isinstance(y, pd.Series)
    assert list(X.columns) == ['x0', 'x1', 'x2']
    np.testing.assert_array_equal(y.to_numpy(), X['x0'].to_numpy())

def test_sim_presence():
    X, y, prob = sim_presence(100, np.random.default_rng(1), p=6)
    assert list(X.columns) == [f'v{j}' for j in range(1, 7)]
    assert set(np.unique(y)) <= {0, 1}
    assert np.all((prob > 0) & (prob < 1))

def test_quantile_cutpoints():
    cps = utils.quantile_cutpoints(np.array([3., 1., 2., 2.]), 100)
    np.testing.assert_array_equal(cps, [1.5, 2.5])
    assert utils.quantile_cutpoints(np.ones(5), 100).size == 0
    cps = utils.quantile_cutpoints(np.arange(1000, dtype=float), 10)
    assert cps.size == 10
    assert np.all(np.diff(cps) > 0)

def test_drop_incomplete():
    X = pd.DataFrame({'a': [1., np.nan, 3., 4.], 'b': [1., 2., 3., np.nan]})
    y = pd.Series([0, 1, np.nan, 1])
    Xc, yc = drop_incomplete(X, y)
    assert list(Xc.index) == [0]
    Xc, yc = drop_incomplete(X, y, columns=['a'])
    assert list(Xc.index) == [0, 3]
    assert list(Xc.columns) == ['a']
    Xc, yc = drop_incomplete(X)
    assert yc is None and list(Xc.index) == [0, 2]

def test_invgamma_rvs_mean():
    rng = np.random.default_rng(3)
    draws = np.array([utils.invgamma_rvs(5.0, 4.0, rng) for _ in range(5000)])
    np.testing.assert_allclose(draws.mean(), 4.0/(5.0 - 1), rtol=0.05)

@pytest.mark.parametrize("c", [0.0, 1.5, 4.0])
def test_polya_gamma_mean(c):
    rng = np.random.default_rng(11)
    draws = utils.polya_gamma_rvs(np.full(20000, c), rng)
    expected = 0.25 if c == 0 else np.tanh(c/2)/(2*c)
    assert np.all(draws > 0)
    np.testing.assert_allclose(draws.mean(), expected, rtol=0.03)

# =============================================================================
# Tests for BARTPrior
# =============================================================================
def test_prior_split_probability():
    prior = BARTPrior(alpha=0.95, beta=2)
    assert prior.get_p_split(0) == pytest.approx(0.95)
    assert prior.get_p_split(1) == pytest.approx(0.95/4)
    assert prior.log_p_split(2) == pytest.approx(np.log(0.95/9))
    assert prior.log_p_stop(0) == pytest.approx(np.log(0.05))

def test_prior_leaf_scale():
    prior = BARTPrior(m=200, k=2)
    assert prior.sigma_mu('identity') == pytest.approx(0.5/(2*np.sqrt(200)))
    assert prior.sigma_mu('probit') == pytest.approx(3/(2*np.sqrt(200)))
    assert prior.sigma_mu('logit') == pytest.approx(3*np.pi/np.sqrt(3)/(2*np.sqrt(200)))

def test_prior_leaf_marginal_and_posterior():
    assert BARTPrior.leaf_log_marginal(0.0, 0.0, 0.1) == 0.0
    # a leaf whose residuals agree with a non-zero value is more likely than one centered at zero
    assert BARTPrior.leaf_log_marginal(10.0, 5.0, 0.5) > BARTPrior.leaf_log_marginal(10.0, 0.0, 0.5)
    mean, std = BARTPrior.leaf_posterior(10.0, 5.0, 1.0)
    assert mean == pytest.approx(5.0/11)
    assert std == pytest.approx(1/np.sqrt(11))

def test_prior_calc_lambda():
    prior = BARTPrior(nu=3, q=0.9)
    lambd = prior.calc_lambda(0.5)
    # P(sigma < sigest) = q with sigma^2 ~ nu * lambda / chi2_nu
    assert chi2.sf(prior.nu*lambd/0.25, prior.nu) == pytest.approx(0.9)

def test_prior_split_var_probs():
    prior = BARTPrior(split_weights=[1, 0, 3])
    np.testing.assert_allclose(prior.split_var_probs(np.array([0, 2])), [0.25, 0.75])
    np.testing.assert_allclose(BARTPrior().split_var_probs(np.array([1, 4])), [0.5, 0.5])
    assert prior.log_split_prob(2, np.array([0, 2]), 4) == pytest.approx(np.log(0.75) - np.log(4))

@pytest.mark.parametrize("kwargs", [
    {'alpha': 0.0}, {'alpha': 1.5}, {'beta': 0.0}, {'k': -1.0}, {'nu': 0.0},
    {'m': 0}, {'m': 2.5}, {'q': 1.0}, {'split_weights': [-1, 2]}, {'split_weights': [0, 0]},
])
def test_prior_invalid_parameters(kwargs):
    with pytest.raises(InvalidPriorParameters):
        BARTPrior(**kwargs)

# =============================================================================
# Tests for NodeData and Node functionality
# =============================================================================
def test_node_data_min_size():
    with pytest.raises(InvalidTreeError):
        simple_node_data(n=3, node_min_size=5)

def test_node_data_averages():
    data = simple_node_data()
    resid = np.arange(10, dtype=float)
    W, S = data.get_data_averages(resid, np.full(10, 2.0))
    assert W == 20.0
    assert S == 2*resid.sum()

def test_node_data_available_splits():
    data = simple_node_data()
    avail = data.get_available_splits()
    np.testing.assert_array_equal(avail[0], np.arange(1.5, 10, 1.0))
    data.update_split_data(np.array([0, 1, 2]))
    np.testing.assert_array_equal(data.get_available_splits()[0], [1.5, 2.5])
    data.update_split_info(0, 7.5)
    with pytest.raises(InvalidTreeError):
        data.calc_avail_split_and_vars()

def test_node_data_split():
    data = simple_node_data()
    left, right = data.get_data_split(0, 4.5)
    np.testing.assert_array_equal(left, [0, 1, 2, 3])
    np.testing.assert_array_equal(right, [4, 5, 6, 7, 8, 9])
    l_data, r_data = data.get_split_data(0, 4.5, 1.0, 2.0)
    assert l_data.get_nobs() == 4 and r_data.get_params() == 2.0
    with pytest.raises(InvalidTreeError):
        data.get_split_data(0, 1.5, 0.0, 0.0)

def test_node_data_copy():
    data = simple_node_data()
    data_copy = data.copy()
    data.update_node_params(10.0)
    data.update_split_info(0, 3.5)
    assert data_copy.get_params() == 0.0
    assert data_copy.is_split_rule_empty()
    assert data_copy.X is data.X

def test_node_new_split_and_prob():
    node = Node(id=0, is_l=False, data=simple_node_data(node_min_size=1), rng=np.random.default_rng(42), debug=True)
    assert node.can_split()
    prior = BARTPrior()
    split_var, split_val = node.get_new_split(prior)
    assert split_var == 0
    assert split_val in node.get_available_splits()[0]
    node.update_split_info(split_var, split_val)
    assert node.get_split_info() == (split_var, split_val)
    assert node.log_split_prob(prior) == pytest.approx(-np.log(9))

def test_node_copy():
    node = Node(id=0, is_l=True, data=simple_node_data(), rng=np.random.default_rng(42), debug=True)
    node.depth = 2
    node_copy = node.copy()
    assert node is not node_copy
    assert node_copy.depth == 2 and node_copy.get_nobs() == node.get_nobs()
    node.update_node_params(5.0)
    assert node_copy.get_params() == 0.0

# =============================================================================
# Tests for Tree functionality
# =============================================================================
def test_tree_root_properties():
    tree = create_simple_tree()
    root = tree.get_root()
    assert root.id == 0
    assert root.depth == 0
    assert tree.is_stump()
    assert tree.get_depth() == 0
    assert len(tree.get_growable_leaves()) == 1

def test_tree_apply_split_and_validity():
    tree = create_simple_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var=0, split_val=5.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    assert not tree.is_stump()
    assert tree.is_valid()
    assert tree.get_n_leaves() == 2
    assert tree.get_depth() == 1
    np.testing.assert_array_equal(tree.get_fit(10), [1.0]*5 + [2.0]*5)
    np.testing.assert_array_equal(tree.count_splits(1), [1])
    assert tree.get_parents_with_two_leaves() == [root]
    left, right = tree.get_children(root)
    assert left.is_l and not right.is_l
    assert tree.get_parent(left) == root
    assert tree.get_sibling(left) == right

def test_tree_apply_split_too_small_leaves_tree_unchanged():
    tree = create_simple_tree()
    with pytest.raises(InvalidTreeError):
        tree.apply_split(tree.get_root(), split_var=0, split_val=1.5, l_leaf_mu=0.0, r_leaf_mu=0.0)
    assert tree.is_stump()
    assert tree.get_root().is_split_rule_empty()

def test_tree_collapse():
    tree = create_simple_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var=0, split_val=5.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    tree.collapse(root)
    assert tree.is_stump()
    assert tree.is_valid()

def test_tree_update_subtree_data():
    tree = create_simple_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var=0, split_val=5.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    left, _ = tree.get_children(root)
    tree.apply_split(left, split_var=0, split_val=2.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    tree.update_split(root, 0, 7.5)
    assert tree.is_valid()
    assert left.get_nobs() == 7
    assert [leaf.get_nobs() for leaf in tree.get_subtree_leaves(root)] == [2, 5, 3]

def test_tree_update_subtree_data_errors():
    tree = create_simple_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var=0, split_val=5.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    # right child would get a single row
    with pytest.raises(InvalidTreeError):
        tree.update_split(root, 0, 9.5)
    tree = create_simple_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var=0, split_val=5.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    left, _ = tree.get_children(root)
    tree.apply_split(left, split_var=0, split_val=2.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    # the left child rule cannot split rows with x <= 1.5
    root.update_split_info(0, 1.5)
    with pytest.raises(InvalidTreeError):
        tree.check_split_struct(root)

def test_tree_copy_is_independent():
    tree = create_simple_tree()
    tree_copy = tree.copy()
    tree_copy.apply_split(tree_copy.get_root(), split_var=0, split_val=5.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    assert tree.is_stump()
    assert tree_copy.is_valid()
    assert copy.deepcopy(tree_copy).is_equal(tree_copy, hard=3)

def test_tree_is_equal():
    tree1 = create_simple_tree()
    tree2 = create_simple_tree()
    assert tree1.is_equal(tree2, hard=0)
    tree1.apply_split(tree1.get_root(), split_var=0, split_val=5.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    assert not tree1.is_equal(tree2, hard=0)
    tree2.apply_split(tree2.get_root(), split_var=0, split_val=4.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    assert tree1.is_equal(tree2, hard=0)
    assert not tree1.is_equal(tree2, hard=1)

def test_tree_show():
    tree = create_simple_tree()
    tree.apply_split(tree.get_root(), split_var=0, split_val=5.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    out = tree.show(names=['elevation'])
    assert 'elevation <= 5.5' in out

# =============================================================================
# Tests for snapshots and residual bookkeeping
# =============================================================================
def test_partial_residual():
    np.testing.assert_array_equal(partial_residual(np.array([1., -1.]), np.array([0.5, 0.5])), [1.5, -0.5])

def test_tree_snapshot_matches_tree():
    tree = create_simple_tree()
    root = tree.get_root()
    tree.apply_split(root, split_var=0, split_val=5.5, l_leaf_mu=1.0, r_leaf_mu=2.0)
    left, _ = tree.get_children(root)
    tree.apply_split(left, split_var=0, split_val=2.5, l_leaf_mu=-1.0, r_leaf_mu=3.0)
    snap = TreeSnapshot.from_tree(tree, scale=2.0)
    X = root._data.X
    np.testing.assert_array_equal(snap.predict(X), 2.0*tree.get_fit(10))
    assert snap.n_leaves == 3 and snap.depth == 2
    np.testing.assert_array_equal(snap.count_splits(1), [2])
    with pytest.raises(ValueError):
        snap.value[0] = 1.0
    restored = TreeSnapshot.from_dict(snap.to_dict())
    np.testing.assert_array_equal(restored.predict(X), snap.predict(X))

# =============================================================================
# Tests for the BART sampler
# =============================================================================
def test_bart_run_returns_posterior(linear_data):
    X, y, _ = linear_data
    bart = BART(X, y, m=10, iters=30, burnin=10, thinning=2, seed=42)
    post = bart.run()
    assert isinstance(post, Posterior)
    assert post.n_draws == len(post) == 10
    assert len(post.trace) == 30
    assert post.trace['retained'].sum() == 10
    for key in ['elap_time', 'tot_mh_steps', 'elap_time_human']:
        assert key in post.timings
    assert post.setup['m'] == 10 and post.setup['link'] == 'identity'
    c = post.counters
    assert c['proposed'] + c['skipped'] == 10*30
    assert c['accepted'] + c['failed_error'] + c['failed_prob'] == c['proposed']
    assert sum(c[f'{move}_proposed'] for move in ['grow', 'prune', 'change', 'swap']) == c['proposed']

@pytest.mark.parametrize("iters,burnin,thinning", [(23, 5, 4), (20, 0, 1), (21, 10, 3)])
def test_retained_draw_count(linear_data, iters, burnin, thinning):
    X, y, _ = linear_data
    post = BART(X, y, m=3, iters=iters, burnin=burnin, thinning=thinning, seed=1).run()
    assert post.n_draws == (iters - burnin)//thinning
    assert [d.iteration for d in post.draws] == [i for i in range(burnin, iters) if (i - burnin + 1) % thinning == 0]

def test_bart_debug_run_keeps_invariants(linear_data):
    X, y, _ = linear_data
    bart = BART(X, y, m=5, iters=25, burnin=5, seed=3, debug=True, node_min_size=3)
    bart.run()
    n = len(y)
    for t, tree in enumerate(bart.ensemble.trees):
        assert tree.is_valid()
        # leaves partition the training rows
        idx = np.sort(np.concatenate([leaf.get_idx() for leaf in tree.get_leaves()]))
        np.testing.assert_array_equal(idx, np.arange(n))
        np.testing.assert_allclose(bart.ensemble.tree_fits[t], tree.get_fit(n))
    np.testing.assert_allclose(bart.resid, bart.target - bart.ensemble.tree_fits.sum(axis=0))

def test_draws_match_sampler_state(linear_data):
    X, y, _ = linear_data
    bart = BART(X, y, m=8, iters=20, burnin=0, seed=5)
    post = bart.run()
    raw = predict_draws(post, X, scale='raw')
    assert raw.shape == (20, len(y))
    np.testing.assert_allclose(raw[-1], post.offset + bart.y_scale*bart.ensemble.fitted())
    np.testing.assert_allclose(bart.get_fit(), raw[-1])

def test_bart_linear_rmse_heldout():
    rng = np.random.default_rng(7)
    X, y = sim_linear(300, rng)
    post = BART(X.iloc[:200], y.iloc[:200], m=20, iters=300, burnin=100, seed=7).run()
    pred = predict(post, X.iloc[200:])['mean'].to_numpy()
    rmse = np.sqrt(np.mean((pred - y.iloc[200:].to_numpy())**2))
    assert rmse < 0.05

def test_bart_calc_log_tree_prob(linear_data):
    X, y, _ = linear_data
    bart = BART(X, y, m=2, iters=1, burnin=0, seed=1)
    tree = bart.ensemble.trees[0]
    assert bart.calc_log_tree_prob(tree) == pytest.approx(np.log(1 - 0.95))

def test_bart_move_probs_on_stump(linear_data):
    X, y, _ = linear_data
    bart = BART(X, y, m=2, iters=1, burnin=0, seed=1)
    np.testing.assert_allclose(bart.get_move_probs(bart.ensemble.trees[0]), [1, 0, 0, 0])

@pytest.mark.parametrize("link", ['probit', 'logit'])
def test_bart_binary(presence_data, link):
    X, y, _ = presence_data
    bart = BART(X, y, m=10, iters=40, burnin=10, link=link, seed=2)
    post = bart.run()
    assert post.link == link and post.is_binary
    prob = predict(post, X)
    assert np.all((prob['mean'] >= 0) & (prob['mean'] <= 1))
    assert np.all(prob['q0.025'] <= prob['q0.975'])
    raw = predict_draws(post, X, scale='raw')
    np.testing.assert_allclose(raw[-1], post.offset + bart.ensemble.fitted())

def test_bart_link_detection(linear_data):
    X, y, _ = linear_data
    assert BART(X, y, m=2, iters=1, burnin=0).link == 'identity'
    yb = (y > 0.5).astype(int)
    assert BART(X, yb, m=2, iters=1, burnin=0).link == 'probit'
    assert BART(X, yb.astype(bool), m=2, iters=1, burnin=0).link == 'probit'
    yc = pd.Series(np.where(yb == 1, 'present', 'absent'), dtype='category')
    bart = BART(X, yc, m=2, iters=1, burnin=0)
    assert bart.link == 'probit'
    assert set(np.unique(bart.y)) == {0.0, 1.0}

def test_bart_input_errors(linear_data):
    X, y, _ = linear_data
    with pytest.raises(ValueError):
        BART(X, pd.Series(np.zeros(len(y), dtype=int)), m=2)
    Xn = X.copy()
    Xn.iloc[3, 0] = np.nan
    with pytest.raises(ValueError):
        BART(Xn, y, m=2)
    with pytest.raises(ValueError):
        BART(X, y.iloc[:10], m=2)
    with pytest.raises(ValueError):
        BART(X, np.full(len(y), 3.0), m=2)
    with pytest.raises(InvalidPriorParameters):
        BART(X, y, alpha=1.5)
    with pytest.raises(InvalidPriorParameters):
        BART(X, y, m=2, split_weights=[1, 1])

@pytest.mark.parametrize("kwargs", [
    {'thinning': 0}, {'iters': 0}, {'burnin': -1}, {'numcut': 0},
])
def test_bart_invalid_run_settings(linear_data, kwargs):
    X, y, _ = linear_data
    with pytest.raises(ValueError):
        BART(X, y, m=3, **kwargs)

@pytest.mark.parametrize("sigest", [0.0, -0.1])
def test_bart_invalid_sigest(linear_data, sigest):
    X, y, _ = linear_data
    with pytest.raises(InvalidPriorParameters):
        BART(X, y, m=3, sigest=sigest)

def test_bart_callback_abort(linear_data):
    X, y, _ = linear_data
    seen = []
    def callback(i, sampler):
        seen.append(i)
        return i >= 4
    bart = BART(X, y, m=5, iters=50, burnin=0, callback=callback, seed=1)
    post = bart.run()
    assert bart.aborted
    assert seen == [0, 1, 2, 3, 4]
    assert post.n_draws == 5
    assert len(post.trace) == 5

def test_bart_convergence_warning(linear_data):
    X, y, _ = linear_data
    with pytest.warns(NonConvergenceWarning):
        BART(X, y, m=5, iters=20, burnin=5, convergence_threshold=0.0, seed=1).run()
    with warnings.catch_warnings():
        warnings.simplefilter('error', NonConvergenceWarning)
        BART(X, y, m=5, iters=20, burnin=5, convergence_threshold=1e6, seed=1).run()

def test_bart_seed_reproducibility(linear_data):
    X, y, _ = linear_data
    p1 = BART(X, y, m=5, iters=15, burnin=5, seed=9).run()
    p2 = BART(X, y, m=5, iters=15, burnin=5, seed=9).run()
    np.testing.assert_array_equal(predict_draws(p1, X), predict_draws(p2, X))

def test_run_chains(linear_data):
    X, y, _ = linear_data
    post = run_chains(X, y, n_chains=2, n_jobs=2, seed=3, m=5, iters=20, burnin=10)
    assert post.n_chains == 2
    assert post.n_draws == 20
    assert [d.chain for d in post.draws] == [0]*10 + [1]*10
    assert set(post.trace['chain']) == {0, 1}
    d0, d1 = predict_draws(post, X)[[0, 10]]
    assert not np.array_equal(d0, d1)

# =============================================================================
# Tests for the Posterior and the predictor
# =============================================================================
def test_posterior_serialization_round_trip(linear_fit, tmp_path):
    X, y, _, post = linear_fit
    restored = Posterior.from_dict(post.to_dict())
    np.testing.assert_array_equal(predict_draws(restored, X), predict_draws(post, X))
    path = tmp_path / 'posterior.json'
    post.save(path)
    loaded = Posterior.load(path)
    np.testing.assert_array_equal(predict_draws(loaded, X), predict_draws(post, X))
    assert loaded.feature_names == post.feature_names
    assert loaded.trace['retained'].dtype == bool
    pd.testing.assert_frame_equal(loaded.trace, post.trace, check_dtype=False)

def test_predict_is_idempotent(linear_fit):
    X, _, _, post = linear_fit
    p1 = predict(post, X)
    p2 = predict(post, X)
    pd.testing.assert_frame_equal(p1, p2)
    assert list(p1.columns) == ['mean', 'q0.025', 'q0.975']
    assert p1.index.equals(X.index)

def test_predict_scales(linear_fit):
    X, _, _, post = linear_fit
    np.testing.assert_array_equal(predict_draws(post, X, scale='raw'), predict_draws(post, X))
    with pytest.raises(ValueError):
        predict_draws(post, X, scale='logit')

def test_predict_missing_covariate(linear_fit):
    X, _, _, post = linear_fit
    assert post.referenced_variables() == ['x0']
    with pytest.raises(MissingCovariate) as e:
        predict(post, X.drop(columns='x0').assign(other=1.0))
    assert e.value.missing == ['x0']
    Xn = X.copy()
    Xn.iloc[0, 0] = np.nan
    with pytest.raises(ValueError):
        predict(post, Xn)

def test_predict_array_input(linear_fit):
    X, _, _, post = linear_fit
    np.testing.assert_array_equal(predict_draws(post, X.to_numpy()), predict_draws(post, X))

def test_predict_integer_column_labels():
    rng = np.random.default_rng(3)
    X = pd.DataFrame(rng.uniform(size=(80, 2)))
    y = X[0] + 0.1*rng.standard_normal(80)
    post = BART(X, y, m=5, iters=30, burnin=10, seed=3).run()
    assert post.feature_names == ('0', '1')
    res = predict(post, X)
    assert len(res) == 80
    np.testing.assert_array_equal(predict_draws(post, X), predict_draws(post, X.rename(columns=str)))
    pd_curve = partial_dependence(post, X, 0, n_grid=3)
    assert list(pd_curve.columns) == ['0', 'mean', 'q0.025', 'q0.975']

def test_predict_raster(linear_fit):
    X, _, _, post = linear_fit
    grid = X['x0'].to_numpy().reshape(10, 10).copy()
    grid[2, 3] = np.nan
    maps = predict_raster(post, {'x0': grid})
    assert set(maps) == {'mean', 'q0.025', 'q0.975'}
    assert maps['mean'].shape == (10, 10)
    assert np.isnan(maps['mean'][2, 3])
    expected = predict(post, X)['mean'].to_numpy().reshape(10, 10)
    valid = ~np.isnan(grid)
    np.testing.assert_allclose(maps['mean'][valid], expected[valid])
    with pytest.raises(MissingCovariate):
        predict_raster(post, {'elevation': grid})

def test_posterior_concat_mismatch(linear_fit, presence_data):
    _, _, _, post = linear_fit
    X, y, _ = presence_data
    other = BART(X, y, m=2, iters=3, burnin=0).run()
    with pytest.raises(ValueError):
        Posterior.concat([post, other])

# =============================================================================
# Run tests if executed as a script
# =============================================================================
if __name__ == "__main__":
    pytest.main([__file__])
