"""
Ontology Interface Module
=========================

Command-line interface.
"""

from .ontology_cli import OntologyCLI, cli_main

__all__ = ["OntologyCLI", "cli_main"]
