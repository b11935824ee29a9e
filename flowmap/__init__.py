"""flowmap: map tabular rows onto a graph of persistent entities.

Mapping documents declare, per entity type, which source fields land on which
attributes or relation chains. The engine orders entity types by their
required-parent dependencies, resolves relations by lookup-or-create, and
loads rows one at a time under a configurable error policy.
"""

__version__ = "0.1.0"
