"""Exception types raised by the resolution engine."""

from __future__ import annotations


class ReqGraphError(Exception):
    """Base class for reqgraph errors."""


class NodeNotFound(ReqGraphError, KeyError):
    """A node id was referenced that the graph has never seen.

    Indicates an internal bookkeeping bug rather than a data problem.
    """

    def __init__(self, node_id: str, role: str = "Node"):
        self.node_id = node_id
        super().__init__(f"{role} '{node_id}' does not exist in the graph.")

    def __str__(self) -> str:
        # KeyError would otherwise repr() the message
        return str(self.args[0])


class NoTargetFound(ReqGraphError):
    """No captured request could be matched to the goal."""


class OracleError(ReqGraphError):
    """The oracle failed, timed out, or returned an answer of the wrong shape."""


class HarFormatError(ReqGraphError, ValueError):
    """A traffic log or cookie file could not be read."""
