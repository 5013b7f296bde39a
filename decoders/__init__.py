"""Artifact decoders.

Importing this package registers every decoder with the kind registry.
"""

from decoders import csv_table, evtx, mft, regf, srum  # noqa: F401
from decoders.base import DecoderOptions, FormatDecoder, decoder_for, register_decoder, registered_kinds

__all__ = [
    "DecoderOptions",
    "FormatDecoder",
    "decoder_for",
    "register_decoder",
    "registered_kinds",
]
