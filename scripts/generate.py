"""
Greedy generation from the command line.

Builds a model from a YAML config under configs/model (or a Hugging Face
config name/path), optionally loads a state dict, and decodes each input with
the incremental cache. Inputs are either raw text (with --tokenizer) or
whitespace-separated token ids.
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List

import torch
from transformers import AutoTokenizer

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from src.inference import GenerationConfig, greedy_generate, pad_batch, padding_side_for
from src.models import build_model, load_model_config, load_pretrained_config
from src.utils.logging import configure_logging, get_logger
from src.utils.random import set_seed

logger = get_logger(__name__)


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Greedy generation with a decode cache.")
    parser.add_argument("inputs", nargs="+", help="Input texts, or token ids like '0 45 2'.")
    parser.add_argument(
        "--model-config",
        default="configs/model/mbart_small.yaml",
        help="YAML model config, or a Hugging Face config name or path.",
    )
    parser.add_argument(
        "--architecture",
        default=None,
        help="Override the architecture (for_conditional_generation or "
        "for_causal_language_modeling).",
    )
    parser.add_argument("--checkpoint", type=Path, default=None, help="Optional state dict.")
    parser.add_argument("--tokenizer", default=None, help="Hugging Face tokenizer name or path.")
    parser.add_argument("--max-length", type=int, default=20)
    parser.add_argument("--min-length", type=int, default=0)
    parser.add_argument("--no-cache", action="store_true", help="Recompute every step.")
    parser.add_argument("--device", default="cpu", help="Device to run on (cpu or cuda).")
    parser.add_argument("--seed", type=int, default=0)
    return parser.parse_args()


def _parse_token_ids(inputs: List[str]) -> List[List[int]]:
    try:
        return [[int(token) for token in text.split()] for text in inputs]
    except ValueError:
        raise ValueError("inputs must be token ids unless --tokenizer is given") from None


def main() -> None:
    configure_logging()
    args = parse_args()
    set_seed(args.seed)

    config_path = Path(args.model_config)
    if config_path.suffix in {".yaml", ".yml"}:
        config = load_model_config(config_path)
    else:
        config = load_pretrained_config(args.model_config)
    model = build_model(config, architecture=args.architecture)
    if args.checkpoint is not None:
        state = torch.load(args.checkpoint, map_location="cpu")
        model.load_state_dict(state)
        logger.info("Loaded weights from %s", args.checkpoint)
    model.to(args.device).eval()

    tokenizer = None
    if args.tokenizer is not None:
        tokenizer = AutoTokenizer.from_pretrained(args.tokenizer)
        batch = [tokenizer(text)["input_ids"] for text in args.inputs]
    else:
        batch = _parse_token_ids(args.inputs)

    pad_token_id = getattr(model.config, "pad_token_id", 0)
    input_ids, attention_mask = pad_batch(batch, pad_token_id, padding_side_for(model))
    generation_config = GenerationConfig.from_model_config(
        model.config, max_length=args.max_length, min_length=args.min_length
    )
    sequences = greedy_generate(
        model,
        input_ids.to(args.device),
        attention_mask.to(args.device),
        config=generation_config,
        use_cache=not args.no_cache,
    )

    results = []
    for text, ids in zip(args.inputs, sequences.tolist()):
        entry = {"input": text, "token_ids": ids}
        if tokenizer is not None:
            entry["output"] = tokenizer.decode(ids, skip_special_tokens=True)
        results.append(entry)
    print(json.dumps(results, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
