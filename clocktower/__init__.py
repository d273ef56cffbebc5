"""Session coordination server for in-person Blood on the Clocktower games"""

__version__ = '1.0.0'
