from execution.keyring import KeyringError, load_identity
from execution.oracle_client import OracleClient, OracleClientError
from execution.payload_codec import PayloadCodecError, ProgramSchema, load_program_schema
from execution.tx_submitter import TxSubmitter, TxSubmitterError

__all__ = [
    "KeyringError",
    "load_identity",
    "OracleClient",
    "OracleClientError",
    "PayloadCodecError",
    "ProgramSchema",
    "load_program_schema",
    "TxSubmitter",
    "TxSubmitterError",
]
