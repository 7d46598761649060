"""
Foundry Gateway: HTTP/SSE front end for a locally running inference engine.
"""

__version__ = "0.4.0"
