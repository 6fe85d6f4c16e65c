"""
Synthetic data module for hormesis dose-response models.

This module generates experiments with known ground truth:
- DoseResponseSimulator: Observation tables from fixed group parameters
- Correlated trial effects through the covariance model
- Gaussian residual noise

**Usage:**
```python
from simulation.simulator import DoseResponseSimulator

sim = DoseResponseSimulator(n_species=2, n_trials=3)
effects = sim.sample_trial_effects(scales=[0.05, 0.05, 0.1, 0.1], random_seed=1)

table = sim.generate(
    doses=[0.1, 1.0, 10.0],
    c=0.0, d=1.0, e=1.0, b=2.0,
    f=[0.5, 0.0], w=[1, 0],
    noise_sd=0.01,
    trial_effects=effects,
    random_seed=2,
)
```
"""

from simulation.simulator import DoseResponseSimulator

__all__ = [
    "DoseResponseSimulator",
]
