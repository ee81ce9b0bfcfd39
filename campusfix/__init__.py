__version__ = '0.4.0'


def get_version() -> str:
    return __version__
