import argparse
import logging
from pathlib import Path

import numpy as np
import trio

from streamrec.config import (
    EndpointConfig,
    EndpointRule,
    FeatureConfig,
    LMConfig,
    ModelConfig,
    RecognizerConfig,
)
from streamrec.engine.recognizer import Recognizer, create_recognizer
from streamrec.server import RecognizerSocketServer


def _add_recognizer_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--model",
        required=True,
        help="Hub repo id or directory with model.safetensors and tokens.txt.",
    )
    parser.add_argument("--device", default="cpu")
    parser.add_argument("--feature-dim", type=int, default=80)
    parser.add_argument("--frame-shift-ms", type=float, default=10.0)
    parser.add_argument("--hidden-dim", type=int, default=256)
    parser.add_argument("--num-layers", type=int, default=2)
    parser.add_argument("--subsampling-factor", type=int, default=4)
    parser.add_argument("--chunk-size", type=int, default=32)
    parser.add_argument("--vocab-size", type=int, default=500)
    parser.add_argument(
        "--decoding-method",
        choices=("greedy_search", "modified_beam_search"),
        default="greedy_search",
    )
    parser.add_argument(
        "--max-active-paths",
        type=int,
        default=4,
        help="Beam size used in modified beam search.",
    )
    parser.add_argument(
        "--hotwords-file",
        default="",
        help="One phrase per line, tokens separated by spaces, e.g. '▁HE LL O ▁WORLD'.",
    )
    parser.add_argument(
        "--hotwords-score",
        type=float,
        default=1.5,
        help="Bonus score per matched hotword token.",
    )
    parser.add_argument("--blank-penalty", type=float, default=0.0)
    parser.add_argument("--lm", default="", help="Bigram LM safetensors file.")
    parser.add_argument("--lm-scale", type=float, default=0.5)
    parser.add_argument(
        "--disable-endpoint",
        action="store_true",
        help="Disable endpoint detection.",
    )
    parser.add_argument("--rule1-min-trailing-silence", type=float, default=2.4)
    parser.add_argument("--rule2-min-trailing-silence", type=float, default=1.2)
    parser.add_argument("--rule2-min-utterance-length", type=float, default=5.0)
    parser.add_argument("--rule3-min-utterance-length", type=float, default=20.0)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="streamrec")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Start the streaming socket server.")
    _add_recognizer_args(serve)
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=6006)
    serve.add_argument("--status-port", type=int, default=None)
    serve.add_argument("--max-batch-size", type=int, default=32)

    decode = subparsers.add_parser(
        "decode", help="Decode .npy feature files and print JSON results."
    )
    _add_recognizer_args(decode)
    decode.add_argument("features", nargs="+", help="(T, feature_dim) .npy files")
    return parser


def config_from_args(args: argparse.Namespace) -> RecognizerConfig:
    return RecognizerConfig(
        feat_config=FeatureConfig(
            feature_dim=args.feature_dim, frame_shift_ms=args.frame_shift_ms
        ),
        model_config=ModelConfig(
            model=args.model,
            feat_in=args.feature_dim,
            hidden_dim=args.hidden_dim,
            num_layers=args.num_layers,
            subsampling_factor=args.subsampling_factor,
            chunk_size=args.chunk_size,
            vocab_size=args.vocab_size,
            device=args.device,
        ),
        endpoint_config=EndpointConfig(
            rule1=EndpointRule(True, args.rule1_min_trailing_silence, 0.0),
            rule2=EndpointRule(
                True,
                args.rule2_min_trailing_silence,
                args.rule2_min_utterance_length,
            ),
            rule3=EndpointRule(True, 0.0, args.rule3_min_utterance_length),
        ),
        lm_config=LMConfig(model=args.lm, scale=args.lm_scale),
        enable_endpoint=not args.disable_endpoint,
        max_active_paths=args.max_active_paths,
        hotwords_score=args.hotwords_score,
        hotwords_file=args.hotwords_file,
        decoding_method=args.decoding_method,
        blank_penalty=args.blank_penalty,
    )


def decode_files(recognizer: Recognizer, paths: list[str]) -> list[list[str]]:
    """Decodes all files as one batch of streams; returns JSON lines per file."""
    streams = []
    for path in paths:
        stream = recognizer.create_stream()
        stream.feed(np.load(path))
        stream.input_finished()
        streams.append(stream)

    outputs: list[list[str]] = [[] for _ in paths]
    while True:
        ready = [s for s in streams if recognizer.is_ready(s)]
        if not ready:
            break
        recognizer.decode_streams(ready, len(ready))
        for idx, stream in enumerate(streams):
            if recognizer.is_endpoint(stream):
                outputs[idx].append(recognizer.get_result(stream).as_json_string())
                recognizer.reset(stream)
    for idx, stream in enumerate(streams):
        result = recognizer.get_result(stream)
        if result.tokens:
            outputs[idx].append(result.as_json_string())
    return outputs


def _print_config(config: RecognizerConfig) -> None:
    print("Starting streamrec")
    print(f"  model: {config.model_config.model}")
    print(f"  device: {config.model_config.device}")
    print(f"  decoding_method: {config.decoding_method}")
    print(f"  max_active_paths: {config.max_active_paths}")
    print(f"  enable_endpoint: {config.enable_endpoint}")
    if config.hotwords_file:
        print(f"  hotwords_file: {config.hotwords_file}")
        print(f"  hotwords_score: {config.hotwords_score}")
    if config.lm_config.model:
        print(f"  lm: {config.lm_config.model} (scale {config.lm_config.scale})")


async def _serve_async(args: argparse.Namespace, recognizer: Recognizer) -> None:
    server = RecognizerSocketServer(
        recognizer, host=args.host, port=args.port, status_port=args.status_port
    )
    await server.serve()


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    parser = _build_parser()
    args = parser.parse_args()

    config = config_from_args(args)
    _print_config(config)
    recognizer = create_recognizer(config)
    if args.command == "serve":
        recognizer.scheduler.max_batch_size = args.max_batch_size
        trio.run(_serve_async, args, recognizer)
    if args.command == "decode":
        for path, lines in zip(args.features, decode_files(recognizer, args.features)):
            print(f"# {Path(path).name}")
            for line in lines:
                print(line)


if __name__ == "__main__":
    main()
