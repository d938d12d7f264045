"""rulegate - End-to-end smoke gate for compiled rule-set artifacts.

rulegate loads every compiled .mrs rule-set into an isolated proxy engine
instance and proves that traffic routed through the rule actually flows.
"""

__version__ = "0.1.0"
__author__ = "rulegate contributors"
__description__ = "End-to-end smoke gate for compiled rule-set artifacts"

from rulegate.config import RulegateConfig

__all__ = [
    "__version__",
    "__author__",
    "__description__",
    "RulegateConfig",
]
