"""gate_shared — Shared utilities for the Gate Lambda functions.

Provides:
    - Cognito JWT authentication (bearer header or cookie)
    - Lazy boto3 client singletons with retry/timeout config
    - HTTP response helpers with CORS
    - DynamoDB serialization/deserialization
"""

__version__ = "1.0.0"
