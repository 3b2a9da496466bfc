"""Project version constants.

These constants are used in logs, the AWS user agent and the API health payload
so that remediation runs can be traced back to a specific engine/schema version.
"""

ENGINE_NAME: str = "remediation-engine"
ENGINE_VERSION: str = "0.1.0"

SCHEMA_VERSION: int = 1
