from typing import Any, Sequence
import logging
import time

import torch

from streamrec.config import RecognizerConfig
from streamrec.engine.context_graph import (
    ContextGraph,
    Hotword,
    load_hotwords_file,
    parse_hotwords,
)
from streamrec.engine.decoding import DecodingPolicy, create_decoding_policy
from streamrec.engine.endpoint import EndpointDetector
from streamrec.engine.result import RecognitionResult
from streamrec.engine.scheduler import Scheduler
from streamrec.engine.stream import Stream
from streamrec.errors import ConfigurationError, ParseError
from streamrec.lm import BigramLanguageModel, LanguageModel
from streamrec.model import AcousticModel, StreamingGruModel
from streamrec.symbols import SymbolTable


class Recognizer:
    """Batches ready streams through one model call and decodes the output.

    Streams are owned by the caller. A stream must not be passed to two
    concurrent ``decode_streams`` calls.
    """

    def __init__(
        self,
        config: RecognizerConfig,
        model: AcousticModel,
        symbol_table: SymbolTable | None = None,
        lm: LanguageModel | None = None,
        logger: logging.Logger | None = None,
        max_batch_size: int = 32,
    ):
        self.logger = logger or logging.getLogger(__name__)
        config.validate()
        self.config = config
        self.model = model
        symbol_table = symbol_table or getattr(model, "symbol_table", None)
        if symbol_table is None:
            raise ConfigurationError("No symbol table given and the model has none")
        self.symbol_table = symbol_table

        if model.feature_dim != config.feat_config.feature_dim:
            raise ConfigurationError(
                f"Model expects {model.feature_dim}-dim features, config has "
                f"{config.feat_config.feature_dim}"
            )
        if len(symbol_table) != model.vocab_size:
            raise ConfigurationError(
                f"Symbol table has {len(symbol_table)} entries, model vocabulary "
                f"is {model.vocab_size}"
            )

        self._hotwords: list[Hotword] = []
        if config.hotwords_file:
            try:
                self._hotwords = load_hotwords_file(config.hotwords_file, symbol_table)
            except ParseError as exc:
                raise ConfigurationError(
                    f"Invalid hotwords file {config.hotwords_file}: {exc}"
                ) from exc

        if (
            lm is None
            and config.lm_config.model
            and config.decoding_method == "modified_beam_search"
        ):
            lm = BigramLanguageModel.from_config(config.lm_config)
        self.policy: DecodingPolicy = create_decoding_policy(
            config,
            blank_id=symbol_table.blank_id,
            vocab_size=model.vocab_size,
            lm=lm,
            logger=self.logger,
        )
        if self._hotwords and self.policy.method != "modified_beam_search":
            self.logger.warning(
                "Hotwords are only used with modified_beam_search; "
                "decoding with %s ignores the %d phrases in %s.",
                self.policy.method,
                len(self._hotwords),
                config.hotwords_file,
            )

        self.output_frame_shift = (
            config.feat_config.frame_shift_seconds * model.subsampling_factor
        )
        self.endpoint_detector = EndpointDetector(
            config.endpoint_config,
            frame_shift_seconds=self.output_frame_shift,
            enabled=config.enable_endpoint,
            logger=self.logger,
        )
        self.scheduler = Scheduler(
            max_batch_size=max_batch_size,
            device=config.model_config.device,
            logger=self.logger,
        )
        self._decode_calls = 0
        self._decode_time = 0.0
        self.logger.info("Created recognizer: %s", config)

    def create_stream(self, hotwords: str | None = None) -> Stream:
        phrases = list(self._hotwords)
        if hotwords:
            phrases.extend(parse_hotwords(hotwords, self.symbol_table))
            if self.policy.method != "modified_beam_search":
                self.logger.warning(
                    "Hotwords are only used with modified_beam_search; "
                    "decoding with %s ignores them.",
                    self.policy.method,
                )

        context_graph = None
        if phrases and self.policy.method == "modified_beam_search":
            context_graph = ContextGraph(phrases, self.config.hotwords_score)

        result = self.policy.init_result(context_graph)
        result.model_state = self.model.init_state()
        stream = Stream(
            feature_dim=self.model.feature_dim,
            chunk_size=self.model.chunk_size,
            decoder_result=result,
            context_graph=context_graph,
        )
        if context_graph is not None:
            self.logger.debug(
                "Stream %s biased with %d hotwords",
                stream.stream_id,
                context_graph.num_hotwords,
            )
        return stream

    def is_ready(self, stream: Stream) -> bool:
        return stream.is_ready()

    def decode_stream(self, stream: Stream) -> None:
        self.decode_streams([stream])

    def decode_streams(self, streams: Sequence[Stream], n: int | None = None) -> None:
        if n is not None:
            if n < 0:
                raise ValueError(f"n must be >= 0. Given: {n}")
            streams = list(streams)[:n]
        batch = self.scheduler.pack(streams)
        if batch is None:
            return

        # Chunks stay buffered until the model call succeeds.
        start = time.perf_counter()
        with torch.inference_mode():
            log_probs, out_lengths, next_states = self.model.infer(
                batch.features, batch.lengths, batch.states
            )
        outputs = self.scheduler.unpack(batch, log_probs, out_lengths, next_states)
        self.scheduler.commit(batch)

        for stream, stream_log_probs in outputs:
            try:
                self.policy.decode(stream_log_probs, stream.decoder_result)
                self._update_endpoint(stream)
            except Exception:
                self.logger.exception("Decoding failed for stream %s", stream.stream_id)

        self._decode_calls += 1
        self._decode_time += time.perf_counter() - start

    def _update_endpoint(self, stream: Stream) -> None:
        result = stream.decoder_result
        best = result.best()
        self.endpoint_detector.update(
            stream.endpoint_state,
            num_frames=result.num_frames,
            trailing_silence_frames=result.trailing_blank_frames(best),
            has_nonblank=best.num_tokens > 0,
        )

    def get_result(self, stream: Stream) -> RecognitionResult:
        result = stream.decoder_result
        hyp = result.best()
        token_ids = result.arena.tokens(hyp.node)
        frames = result.arena.frames(hyp.node)
        return RecognitionResult(
            text=self.symbol_table.detokenize(token_ids),
            tokens=[self.symbol_table.to_symbol(i) for i in token_ids],
            start_time=stream.frame_offset * self.output_frame_shift,
            timestamps=[f * self.output_frame_shift for f in frames],
            segment=stream.segment,
            is_final=self.is_endpoint(stream),
            token_ids=token_ids,
        )

    def is_endpoint(self, stream: Stream) -> bool:
        return self.endpoint_detector.is_endpoint(stream.endpoint_state)

    def reset(self, stream: Stream) -> None:
        stream.reset()

    def get_metrics(self) -> dict[str, Any]:
        return {
            "scheduler": self.scheduler.counts(),
            "decode_calls": self._decode_calls,
            "decode_avg_ms": (
                (self._decode_time / self._decode_calls) * 1000.0
                if self._decode_calls
                else 0.0
            ),
        }


def create_recognizer(
    config: RecognizerConfig,
    model: AcousticModel | None = None,
    symbol_table: SymbolTable | None = None,
    lm: LanguageModel | None = None,
    logger: logging.Logger | None = None,
) -> Recognizer:
    # Fail on a bad config before loading any weights.
    config.validate()
    if model is None:
        model = StreamingGruModel.from_pretrained(config.model_config)
    return Recognizer(config, model, symbol_table=symbol_table, lm=lm, logger=logger)
