"""Shared type aliases for the zelig2 package."""

from typing import Union

import numpy as np
import pandas as pd

# Seeds accepted wherever draws are random.
RandomState = Union[int, np.random.Generator, None]

# A cluster, stratum or weight reference: ``"~var"``, ``"var"`` or raw values.
VariableRef = Union[str, np.ndarray, pd.Series, list, None]
