"""qftp: file transfer over QUIC streams

One QUIC connection carries one bidirectional stream per operation:
- a fixed-width command frame opens every stream (UP, DOWN, LIST)
- framing (frames.py) is kept apart from the per-operation exchanges (operations.py)
- the dispatcher runs exactly one operation at a time and reports typed outcomes
"""

__all__ = []
