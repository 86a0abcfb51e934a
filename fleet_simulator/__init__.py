"""
Virtual IoT device fleet simulator
"""

__version__ = "1.0.0"
