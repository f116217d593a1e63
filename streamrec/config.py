from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Literal

from streamrec.errors import ConfigurationError

DECODING_METHODS = ("greedy_search", "modified_beam_search")


@dataclass
class FeatureConfig:
    sampling_rate: int = 16000
    feature_dim: int = 80
    frame_shift_ms: float = 10.0

    @property
    def frame_shift_seconds(self) -> float:
        return self.frame_shift_ms / 1000.0

    def validate(self) -> None:
        if self.sampling_rate <= 0:
            raise ConfigurationError(
                f"sampling_rate must be positive. Given: {self.sampling_rate}"
            )
        if self.feature_dim <= 0:
            raise ConfigurationError(
                f"feature_dim must be positive. Given: {self.feature_dim}"
            )
        if self.frame_shift_ms <= 0:
            raise ConfigurationError(
                f"frame_shift_ms must be positive. Given: {self.frame_shift_ms}"
            )


@dataclass
class ModelConfig:
    # Hub repo id or local directory holding model.safetensors and tokens.txt.
    model: str = ""
    feat_in: int = 80
    hidden_dim: int = 256
    num_layers: int = 2
    subsampling_factor: int = 4
    chunk_size: int = 32
    vocab_size: int = 500
    device: str = "cpu"

    def validate(self) -> None:
        for name in (
            "feat_in",
            "hidden_dim",
            "num_layers",
            "subsampling_factor",
            "chunk_size",
            "vocab_size",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ConfigurationError(f"{name} must be positive. Given: {value}")
        if self.chunk_size % self.subsampling_factor != 0:
            raise ConfigurationError(
                f"chunk_size ({self.chunk_size}) must be a multiple of "
                f"subsampling_factor ({self.subsampling_factor})"
            )


@dataclass
class LMConfig:
    # Path to a safetensors file with a `log_probs` bigram matrix.
    model: str = ""
    scale: float = 0.5

    def validate(self) -> None:
        if not self.model:
            return
        if not Path(self.model).is_file():
            raise ConfigurationError(f"LM model file does not exist: {self.model}")
        if self.scale <= 0:
            raise ConfigurationError(f"LM scale must be positive. Given: {self.scale}")


@dataclass
class EndpointRule:
    must_contain_nonsilence: bool = True
    min_trailing_silence: float = 2.0
    min_utterance_length: float = 0.0

    def validate(self, name: str) -> None:
        if self.min_trailing_silence < 0:
            raise ConfigurationError(
                f"{name}.min_trailing_silence must be >= 0. "
                f"Given: {self.min_trailing_silence}"
            )
        if self.min_utterance_length < 0:
            raise ConfigurationError(
                f"{name}.min_utterance_length must be >= 0. "
                f"Given: {self.min_utterance_length}"
            )


@dataclass
class EndpointConfig:
    # Long pause ends an utterance.
    rule1: EndpointRule = field(
        default_factory=lambda: EndpointRule(True, 2.4, 0.0)
    )
    # Shorter pause is enough once the utterance is long enough.
    rule2: EndpointRule = field(
        default_factory=lambda: EndpointRule(True, 1.2, 5.0)
    )
    # Absolute maximum utterance length.
    rule3: EndpointRule = field(
        default_factory=lambda: EndpointRule(True, 0.0, 20.0)
    )

    @property
    def rules(self) -> tuple[EndpointRule, EndpointRule, EndpointRule]:
        return (self.rule1, self.rule2, self.rule3)

    def validate(self) -> None:
        self.rule1.validate("rule1")
        self.rule2.validate("rule2")
        self.rule3.validate("rule3")


@dataclass
class RecognizerConfig:
    feat_config: FeatureConfig = field(default_factory=FeatureConfig)
    model_config: ModelConfig = field(default_factory=ModelConfig)
    endpoint_config: EndpointConfig = field(default_factory=EndpointConfig)
    lm_config: LMConfig = field(default_factory=LMConfig)
    enable_endpoint: bool = True
    max_active_paths: int = 4
    hotwords_score: float = 1.5
    hotwords_file: str = ""
    decoding_method: Literal["greedy_search", "modified_beam_search"] = (
        "greedy_search"
    )
    blank_penalty: float = 0.0

    def validate(self) -> None:
        if self.decoding_method not in DECODING_METHODS:
            raise ConfigurationError(
                f"Unsupported decoding method: {self.decoding_method}. "
                f"Choose one of {', '.join(DECODING_METHODS)}"
            )
        if self.decoding_method == "modified_beam_search":
            if self.max_active_paths <= 0:
                raise ConfigurationError(
                    f"max_active_paths must be positive. Given: {self.max_active_paths}"
                )
            self.lm_config.validate()
        if self.hotwords_file and not Path(self.hotwords_file).is_file():
            raise ConfigurationError(
                f"hotwords file does not exist: {self.hotwords_file}"
            )
        if self.blank_penalty < 0:
            raise ConfigurationError(
                f"blank_penalty must be >= 0. Given: {self.blank_penalty}"
            )
        self.feat_config.validate()
        self.model_config.validate()
        if self.model_config.feat_in != self.feat_config.feature_dim:
            raise ConfigurationError(
                f"model feat_in ({self.model_config.feat_in}) does not match "
                f"feature_dim ({self.feat_config.feature_dim})"
            )
        if self.enable_endpoint:
            self.endpoint_config.validate()

    def is_valid(self) -> bool:
        try:
            self.validate()
        except ConfigurationError:
            return False
        return True

    def __str__(self) -> str:
        parts = ", ".join(f"{f.name}={getattr(self, f.name)!r}" for f in fields(self))
        return f"RecognizerConfig({parts})"
