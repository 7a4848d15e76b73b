"""
FHIR search engine.

Protocol-agnostic search over FHIR resources: parameter maps, lazy paginated
bundle providers, and forward/reverse include resolution.
"""

__version__ = "0.1.0"
