"""
Basic Analysis Example

Demonstrates the two estimation steps on their own: simulating inclusion
probabilities for a PPS design, then estimating a population total from
one realized sample.
"""

import pandas as pd
import numpy as np
from twostage import (
    InclusionProbabilities,
    JointInclusionTable,
    estimate_population_total,
)

# Create synthetic population of primary units
rng = np.random.default_rng(42)
n_units = 40

population = pd.DataFrame({
    'PSU': [f'U{i:02d}' for i in range(n_units)],
    'SIZE': rng.lognormal(1.0, 0.6, n_units),
})
population['TOTAL'] = 12 * population['SIZE'] + rng.normal(0, 4, n_units)
population['TOTAL_VAR'] = rng.uniform(1, 6, n_units)

print("="*80)
print("TWOSTAGE BASIC ANALYSIS EXAMPLE")
print("="*80)

print("\n1. Simulate Inclusion Probabilities (n = 8)")
print("-"*80)

sim = InclusionProbabilities(population['PSU'], population['SIZE'], design='DEFAULT')
tables = sim.estimate(sample_size=8, seed=1, verbose=True)
print(tables.to_frame().head(10).to_string(index=False))

print("\n2. Check Design Invariants")
print("-"*80)

for key, value in tables.check_invariants().items():
    print(f"  {key}: {value:.6f}")

print("\n3. Estimate the Total from One Sample")
print("-"*80)

sampled = sim.draw_sample(sample_size=8, seed=99)
sample = (population.set_index('PSU').loc[sampled, ['TOTAL', 'TOTAL_VAR']]
          .reset_index()
          .rename(columns={'PSU': 'unit', 'TOTAL': 'total', 'TOTAL_VAR': 'variance'}))

total, variance = estimate_population_total(sample, tables.pi, tables.joint)
print(f"  Estimated total: {total:,.2f} (SE {np.sqrt(variance):,.2f})")
print(f"  True total:      {population['TOTAL'].sum():,.2f}")

print("\n4. Hand-Specified Probability Table")
print("-"*80)

pi = pd.Series({'A': 0.5, 'B': 0.5, 'C': 0.25})
joint = JointInclusionTable.from_pairs(
    ['A', 'B', 'C'],
    {('A', 'B'): 0.125, ('A', 'C'): 0.0625, ('B', 'C'): 0.09375},
)
hand = pd.DataFrame({'unit': ['A', 'B', 'C'], 'total': [10.0, 6.0, 4.0]})
total, variance = estimate_population_total(hand, pi, joint)
print(f"  Total: {total:.4f}  Variance: {variance:.4f}  (expected 48 and {256 / 3:.4f})")

print("\n" + "="*80)
print("EXAMPLE COMPLETE")
print("="*80)
