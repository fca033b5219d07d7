"""
Station database builder
Maintains a deduplicated base cache of TV stations and its coverage manifest
"""

__version__ = "1.0.0"
