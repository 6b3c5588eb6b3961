"""
Species distribution workflow on a simulated checkerboard presence field:
spatial cross-validation, multi-chain fit, variable importance, partial
dependence and prediction on the covariate grids.
"""
import logging
import numpy as np
import pandas as pd
from bayesbart import (BART, run_chains, sim_checkerboard, spatial_folds, cross_validate,
                       variable_importance, gelman_rubin, partial_dependence,
                       spatial_partial_dependence, predict_raster)

logging.basicConfig(level=logging.INFO)

seed = 34647
rng = np.random.default_rng(seed)
n_side = 40
coords, X, y = sim_checkerboard(n_side, rng, cell=8, empty_cols=1)

#%% Spatial block cross-validation
folds = spatial_folds(coords, k=5, X=X, seed=seed)
cv = cross_validate(X, y, folds, n_jobs=-1, m=50, iters=600, burnin=100)
print(cv.table[['fold', 'n_test', 'skipped', 'auc', 'tss', 'miller_slope']])
print(cv.summary)

#%% Final model, 4 chains
post = run_chains(X, y, n_chains=4, n_jobs=-1, seed=seed, m=50, iters=1100, burnin=100, thinning=2)
print(f'Draws: {post.n_draws}, R-hat: {gelman_rubin(post):.3f}')
print(variable_importance(post).sort_values(ascending=False))
print(partial_dependence(post, X, 'env', n_grid=10))

#%% Maps
layers = {name: X[name].to_numpy().reshape(n_side, n_side) for name in X.columns}
maps = predict_raster(post, layers)
print(pd.DataFrame(maps['mean']).round(2).iloc[::4, ::4])
spd = spatial_partial_dependence(post, layers, 'env', n_grid=10, aggregate=True)
print(np.nanmean(np.abs(spd.maps - maps['mean'])))

#%% Abort a long chain after 50 iterations
bart = BART(X, y, m=50, iters=10000, burnin=0, callback=lambda i, sampler: i >= 49, verbose='v')
short = bart.run()
print(f'Aborted: {bart.aborted}, retained draws: {short.n_draws}')
