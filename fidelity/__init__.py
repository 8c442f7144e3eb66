"""Design fidelity comparison and iterative refinement engine.

Compares a reference design image against an implementation screenshot,
classifies the differences, scores them on a 0-100 scale and decides
whether another refinement iteration is worthwhile.
"""

__version__ = "0.1.0"
