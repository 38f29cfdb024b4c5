#!/usr/bin/env python
"""
Quick Demo - twostage Package

Run this script to verify the package is working correctly.
Creates a synthetic forest and walks through a two-stage estimate.
"""

import numpy as np
import pandas as pd
from twostage import (
    EstimationFunctions,
    PopulationFrame,
    TwoStageEstimator,
)

def main():
    print("="*80)
    print(" TWOSTAGE QUICK DEMO")
    print("="*80)

    # Create synthetic forest: 100 stands, plots inside each stand
    print("\n1. Creating synthetic forest stands...")
    rng = np.random.default_rng(42)
    n_stands = 100

    stands = pd.DataFrame({
        'STAND': [f'S{i:03d}' for i in range(n_stands)],
        'AREA_HA': rng.gamma(2.0, 5.0, n_stands) + 0.5,
    })
    stands['N_PLOTS'] = np.ceil(stands['AREA_HA'] * 4).astype(int)

    plots = []
    for _, stand in stands.iterrows():
        density = rng.normal(250, 40)
        for p in range(stand['N_PLOTS']):
            plots.append({
                'STAND': stand['STAND'],
                'PLOT': p,
                'VOLUME': max(0.0, rng.normal(density, 60)) / 4,
                'N_PLOTS': stand['N_PLOTS'],
            })
    plots = pd.DataFrame(plots)
    true_total = plots['VOLUME'].sum()
    print(f"   {n_stands} stands, {len(plots):,} plots, true volume {true_total:,.1f}")

    # Test 1: Inclusion probabilities
    print("\n" + "-"*80)
    print("2. Simulating inclusion probabilities (10 stands, PPS by area)...")
    print("-"*80)

    frame = PopulationFrame(stands, id_col='STAND', weight_col='AREA_HA')
    frame.summarize()
    tables = frame.inclusion_probabilities(10, design='FORESTSTANDS', seed=2024, verbose=True)

    approx = EstimationFunctions.with_replacement_probabilities(frame.weights, 10)
    gap = np.abs(tables.inclusion - approx).max()
    print(f"   Largest gap to the with-replacement approximation: {gap:.4f}")

    # Test 2: Second stage
    print("\n" + "-"*80)
    print("3. Drawing stands and subsampling 5 plots in each...")
    print("-"*80)

    sampled = frame.draw_sample(10, seed=7)
    subsample = (plots[plots['STAND'].isin(sampled)]
                 .sample(frac=1, random_state=1)
                 .groupby('STAND')
                 .head(5))
    unit_totals = EstimationFunctions.within_unit_totals(
        subsample, unit='STAND', value='VOLUME', unit_sizes='N_PLOTS'
    )
    print(unit_totals.to_string(index=False))

    # Test 3: Two-stage estimate
    print("\n" + "-"*80)
    print("4. Horvitz-Thompson total with Sen-Yates-Grundy variance...")
    print("-"*80)

    estimator = TwoStageEstimator(tables, design='FORESTSTANDS')
    result = estimator.estimate(unit_totals, display=True)
    covered = result['ci_lower'] <= true_total <= result['ci_upper']
    status = "✓" if covered else "✗"
    print(f"   {status} True total {true_total:,.1f} inside the interval: {covered}")

    print("\n" + "="*80)
    print(" DEMO COMPLETE")
    print("="*80)
    print("\nNext steps:")
    print("  - See examples/basic_analysis.py for the estimator on its own")
    print("  - See examples/sampling_distribution.py for a repeated-sampling check")
    print("\n")

if __name__ == '__main__':
    main()
