import logging

import numpy as np
import pandas as pd
import pytest
from scipy.special import expit

from bayesbart import (
    sim_checkerboard,
    auc,
    auc_pr,
    threshold_metrics,
    optimal_threshold,
    miller_calibration,
    hosmer_lemeshow,
    evaluate,
    autocorrelation_range,
    spatial_folds,
    cross_validate,
    DegenerateFold,
)
from bayesbart.metrics import check_classes
from bayesbart.validation import METRICS, CrossValidationResult

# =============================================================================
# Fixtures
# =============================================================================
@pytest.fixture
def checkerboard():
    rng = np.random.default_rng(8)
    return sim_checkerboard(20, rng, cell=4, empty_cols=1)

@pytest.fixture
def calibrated():
    rng = np.random.default_rng(21)
    p = expit(rng.normal(scale=1.5, size=20000))
    y = (rng.uniform(size=p.size) < p).astype(int)
    return y, p

# =============================================================================
# Tests for the metrics
# =============================================================================
def test_check_classes():
    np.testing.assert_array_equal(check_classes([True, False]), [1, 0])
    with pytest.raises(DegenerateFold):
        check_classes([0, 0, 0])
    with pytest.raises(DegenerateFold):
        check_classes([])
    with pytest.raises(ValueError):
        check_classes([0, 1, 2])

def test_auc_perfect_ranking():
    y = [0, 0, 1, 1]
    p = [0.1, 0.2, 0.8, 0.9]
    assert auc(y, p) == pytest.approx(1.0)
    assert auc_pr(y, p) == pytest.approx(1.0)
    assert auc(y, p[::-1]) == pytest.approx(0.0)

def test_threshold_metrics():
    y = [1, 1, 1, 0, 0, 0]
    p = [0.9, 0.8, 0.3, 0.6, 0.2, 0.1]
    res = threshold_metrics(y, p, 0.5)
    assert res['sensitivity'] == pytest.approx(2/3)
    assert res['specificity'] == pytest.approx(2/3)
    assert res['precision'] == pytest.approx(2/3)
    assert res['ccr'] == pytest.approx(2/3)
    assert res['tss'] == pytest.approx(1/3)
    assert res['kappa'] == pytest.approx(1/3)

def test_threshold_metrics_no_predicted_presence():
    res = threshold_metrics([1, 0, 1, 0], [0.4, 0.3, 0.2, 0.1], 0.95)
    assert np.isnan(res['precision'])
    assert res['sensitivity'] == 0.0 and res['specificity'] == 1.0

def test_threshold_is_inclusive():
    # presence is predicted for p >= threshold
    res = threshold_metrics([1, 0], [0.5, 0.2], 0.5)
    assert res['sensitivity'] == 1.0

def test_optimal_threshold():
    y = [0, 0, 0, 1, 1, 1]
    p = [0.1, 0.2, 0.35, 0.65, 0.8, 0.9]
    threshold, tss = optimal_threshold(y, p)
    assert tss == pytest.approx(1.0)
    # smallest grid value above the largest absence
    assert threshold == pytest.approx(0.35, abs=2e-4)
    threshold, tss = optimal_threshold(y, p, resolution=0.1)
    assert threshold == pytest.approx(0.4)
    assert threshold_metrics(y, p, threshold)['tss'] == pytest.approx(tss)

def test_optimal_threshold_matches_threshold_metrics(calibrated):
    y, p = calibrated
    threshold, tss = optimal_threshold(y[:500], p[:500], resolution=1e-3)
    assert threshold_metrics(y[:500], p[:500], threshold)['tss'] == pytest.approx(tss)
    for t in [0.1, 0.3, 0.5, 0.7, 0.9]:
        assert threshold_metrics(y[:500], p[:500], t)['tss'] <= tss + 1e-12

def test_miller_calibration(calibrated):
    y, p = calibrated
    intercept, slope = miller_calibration(y, p)
    assert intercept == pytest.approx(0.0, abs=0.1)
    assert slope == pytest.approx(1.0, abs=0.1)
    # overconfident predictions have a slope below one
    _, slope = miller_calibration(y, expit(3*np.log(p/(1 - p))))
    assert slope < 0.5

def test_hosmer_lemeshow(calibrated):
    y, p = calibrated
    stat, pvalue = hosmer_lemeshow(y, p)
    assert stat >= 0
    assert pvalue > 0.001
    stat, pvalue = hosmer_lemeshow(y, np.clip(p + 0.2, 0, 0.99))
    assert pvalue < 0.001

def test_evaluate(calibrated):
    y, p = calibrated
    res = evaluate(y[:1000], p[:1000], threshold_resolution=1e-3)
    assert set(res) == {'n', 'n_presence'} | set(METRICS)
    assert res['n'] == 1000
    assert res['n_presence'] == y[:1000].sum()
    assert 0.5 < res['auc'] <= 1.0
    with pytest.raises(DegenerateFold):
        evaluate(np.zeros(10, dtype=int), p[:10])

# =============================================================================
# Tests for spatial blocks
# =============================================================================
def test_autocorrelation_range(checkerboard):
    coords, X, _ = checkerboard
    rng_ = autocorrelation_range(coords, X)
    max_lag = np.sqrt(2)*19/2
    assert 0 < rng_ <= max_lag

def test_autocorrelation_range_smooth_vs_noise(checkerboard):
    coords, X, _ = checkerboard
    rng = np.random.default_rng(0)
    trend = pd.DataFrame({'trend': coords['x'] + coords['y']})
    noise = pd.DataFrame({'noise': rng.standard_normal(len(coords))})
    assert autocorrelation_range(coords, trend) > 2*autocorrelation_range(coords, noise)

def test_autocorrelation_range_errors(checkerboard):
    coords, X, _ = checkerboard
    with pytest.raises(ValueError):
        autocorrelation_range(np.zeros((len(X), 2)), X)
    with pytest.raises(ValueError):
        autocorrelation_range(coords, pd.DataFrame({'a': np.ones(len(X))}))
    with pytest.raises(ValueError):
        autocorrelation_range(coords.iloc[:10], X)
    with pytest.raises(ValueError):
        autocorrelation_range(np.zeros((len(X), 3)), X)

def test_spatial_folds_keep_blocks_together(checkerboard):
    coords, _, _ = checkerboard
    folds = spatial_folds(coords, k=4, block_size=5, seed=1)
    assert folds.shape == (len(coords),)
    assert set(folds) == {0, 1, 2, 3}
    blocks = pd.DataFrame({'bx': coords['x']//5, 'by': coords['y']//5, 'fold': folds})
    assert (blocks.groupby(['bx', 'by'])['fold'].nunique() == 1).all()
    # 16 blocks over 4 folds
    assert (blocks.drop_duplicates(['bx', 'by']).groupby('fold').size() == 4).all()

def test_spatial_folds_default_block_size(checkerboard):
    coords, X, _ = checkerboard
    folds = spatial_folds(coords, k=2, X=X, seed=1)
    assert set(folds) <= {0, 1}
    np.testing.assert_array_equal(folds, spatial_folds(coords, k=2, X=X, seed=1))

def test_spatial_folds_errors(checkerboard):
    coords, _, _ = checkerboard
    with pytest.raises(ValueError):
        spatial_folds(coords, k=5, block_size=100)
    with pytest.raises(ValueError):
        spatial_folds(coords, k=5)
    with pytest.raises(ValueError):
        spatial_folds(coords, k=5, block_size=0)

# =============================================================================
# Tests for cross-validation
# =============================================================================
def test_cross_validate_skips_fold_without_presences(checkerboard, caplog):
    coords, X, y = checkerboard
    # one fold per column of squares, the last column holds absences only
    folds = (coords['x']//4).astype(int).to_numpy()
    with caplog.at_level(logging.WARNING, logger='bayesbart.validation'):
        cv = cross_validate(X, y, folds, m=10, iters=60, burnin=20, seed=3)
    assert isinstance(cv, CrossValidationResult)
    assert len(cv.table) == 5
    assert cv.skipped == [4]
    skipped = cv.table.loc[cv.table['fold'] == 4].iloc[0]
    assert skipped['n_test'] == 80 and skipped['n_train'] == 320
    assert 'single class' in skipped['reason']
    assert np.isnan(skipped['auc'])
    ok = cv.table.loc[~cv.table['skipped']]
    assert ((ok['auc'] >= 0.5) & (ok['auc'] <= 1.0)).all()
    assert list(cv.summary.index) == METRICS
    assert list(cv.summary.columns) == ['mean', 'std']
    assert np.isfinite(cv.summary.loc['auc', 'mean'])
    assert any('Fold 4 skipped' in rec.getMessage() for rec in caplog.records)

def test_cross_validate_checkerboard_spatial_blocks(checkerboard):
    coords, X, y = checkerboard
    folds = spatial_folds(coords, k=5, block_size=4, seed=2)
    # 25 checkerboard squares, 5 per fold
    assert np.bincount(folds).tolist() == [80]*5
    cv = cross_validate(X, y, folds, m=10, iters=60, burnin=20, seed=3)
    assert cv.table['fold'].tolist() == [0, 1, 2, 3, 4]
    yv = y.to_numpy()
    single_class = [f for f in range(5) if np.unique(yv[folds == f]).size < 2]
    assert cv.skipped == single_class
    ok = cv.table.loc[~cv.table['skipped']]
    assert len(ok) == 5 - len(single_class)
    assert ((ok['auc'] >= 0.5) & (ok['auc'] <= 1.0)).all()

def test_cross_validate_integer_column_labels(checkerboard):
    coords, X, y = checkerboard
    folds = (coords['x']//4).astype(int).to_numpy()
    cv = cross_validate(pd.DataFrame(X.to_numpy()), y, folds, m=5, iters=30, burnin=10, seed=3)
    assert cv.skipped == [4]
    assert np.isfinite(cv.table.loc[~cv.table['skipped'], 'auc']).all()

def test_cross_validate_length_mismatch(checkerboard):
    coords, X, y = checkerboard
    with pytest.raises(ValueError):
        cross_validate(X, y, np.zeros(10, dtype=int))

# =============================================================================
# Run tests if executed as a script
# =============================================================================
if __name__ == "__main__":
    pytest.main([__file__])
