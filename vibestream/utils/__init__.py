from vibestream.utils.identifier import validate_identifier, is_valid_identifier, InvalidIdentifier
from vibestream.utils.logging import setup_logging

__all__ = ["validate_identifier", "is_valid_identifier", "InvalidIdentifier", "setup_logging"]
