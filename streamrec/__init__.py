from streamrec.config import (
    EndpointConfig,
    EndpointRule,
    FeatureConfig,
    LMConfig,
    ModelConfig,
    RecognizerConfig,
)
from streamrec.engine import (
    RecognitionResult,
    Recognizer,
    Stream,
    create_recognizer,
)
from streamrec.errors import (
    ConfigurationError,
    InvalidInput,
    ParseError,
    StreamrecError,
    Underrun,
)

__all__ = [
    "ConfigurationError",
    "EndpointConfig",
    "EndpointRule",
    "FeatureConfig",
    "InvalidInput",
    "LMConfig",
    "ModelConfig",
    "ParseError",
    "RecognitionResult",
    "Recognizer",
    "RecognizerConfig",
    "Stream",
    "StreamrecError",
    "Underrun",
    "create_recognizer",
]
