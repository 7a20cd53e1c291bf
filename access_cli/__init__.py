"""df-access: fetch scoped credentials for a subscribed data asset.

Output is plain JSON or shell text so it can feed `credential_process` or `eval`.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
