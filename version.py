"""Project version constants.

These constants are used in logs, in the run manifest and in the envelope of
every delivered record so that stored rows can be traced back to the decoder
set and schema version that produced them.
"""

ENGINE_NAME: str = "artifactstream"
ENGINE_VERSION: str = "0.1.0"

DECODER_SET_VERSION: str = "0.1.0"
SCHEMA_VERSION: int = 1
