"""
crowdlens: find yourself in event photos by face, bib number, or clothing.
"""

__version__ = "0.1.0"


def process_folder(*args, **kwargs):
    """Process every image in a folder into an event.

    See crowdlens._operations.process_folder for full docs.
    """
    from ._operations import process_folder as _process

    return _process(*args, **kwargs)
