"""
Fisheye Correction Examples

This package contains example scripts demonstrating the correcting engine:
- Correcting one frame with every supported correcting type
- Remap cache reuse across frames
"""
