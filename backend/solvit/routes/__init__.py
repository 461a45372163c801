# Infrastructure routes (intentionally unversioned)
# All application routes are in v1/
from . import metrics as metrics

__all__ = ["metrics"]
