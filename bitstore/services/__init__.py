"""
Services package - Storage Consumers

Contains the logic that sits between content records and storage backends.
"""
from bitstore.services.bitstream_service import Bitstream, BitstreamService

__all__ = ["Bitstream", "BitstreamService"]
