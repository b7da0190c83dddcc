"""LlamaEdge server assistant.

Monitors a running LlamaEdge API server: tails its log file, checks its
socket address for liveness and appends a notification record to an output
log once per interval.
"""

__version__ = "0.1.0"
