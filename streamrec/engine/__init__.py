from streamrec.engine.context_graph import ContextGraph, Hotword, parse_hotwords
from streamrec.engine.decoding import (
    DecodingPolicy,
    GreedySearch,
    ModifiedBeamSearch,
    create_decoding_policy,
)
from streamrec.engine.endpoint import EndpointDetector, EndpointState, EndpointStatus
from streamrec.engine.hypothesis import DecoderResult, Hypothesis, TokenArena
from streamrec.engine.recognizer import Recognizer, create_recognizer
from streamrec.engine.result import RecognitionResult
from streamrec.engine.scheduler import Batch, Scheduler
from streamrec.engine.stream import Stream

__all__ = [
    "Batch",
    "ContextGraph",
    "DecoderResult",
    "DecodingPolicy",
    "EndpointDetector",
    "EndpointState",
    "EndpointStatus",
    "GreedySearch",
    "Hotword",
    "Hypothesis",
    "ModifiedBeamSearch",
    "RecognitionResult",
    "Recognizer",
    "Scheduler",
    "Stream",
    "TokenArena",
    "create_decoding_policy",
    "create_recognizer",
    "parse_hotwords",
]
