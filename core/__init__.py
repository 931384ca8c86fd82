"""
Core package for Orchard.

Contains the headless FocusEngine (core.engine), the engine state model,
the shared event interface and the error taxonomy. Zero UI dependencies.
Import submodules directly; this package imports none of them so that
core.errors stays importable from every layer.
"""
