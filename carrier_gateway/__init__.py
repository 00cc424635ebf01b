"""Multi-carrier shipping gateway: rate shopping, labels and tracking."""
__version__ = "1.0.0"
