"""
Cheeky CI Runner
Job execution engine: ordered steps run inside one isolated sandbox per job
"""

__version__ = "0.1.0"
