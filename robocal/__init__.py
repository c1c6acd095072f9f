"""Robot calibration: offset registry, URDF updates, feature finders, base calibration and capture."""

__version__ = "0.1.0"