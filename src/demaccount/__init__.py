"""demaccount: Bayesian demographic accounts sampled by Metropolis-Hastings.

An account holds population counts at time points and component counts
(births, deaths, migration, ...) over the periods between them, tied by the
accounting identity. The sampler updates the account cell by cell while
keeping that identity, the accession counts and the exposure consistent.

```python
from demaccount import account, combined, models, observation, utils
```
"""

from . import (
    account,
    combined,
    densities,
    description,
    iterators,
    mappings,
    models,
    observation,
    proposals,
    utils,
)

__all__ = [
    "account",
    "combined",
    "densities",
    "description",
    "iterators",
    "mappings",
    "models",
    "observation",
    "proposals",
    "utils",
]
