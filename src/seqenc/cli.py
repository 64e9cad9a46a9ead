"""
CLI for SeqEnc. Invoke as: seqenc run ... | seqenc sweep ... | seqenc list ... | seqenc version
"""
import argparse
import csv
import itertools
import logging
from pathlib import Path
from importlib.metadata import version, PackageNotFoundError

import pandas as pd
import torch

from seqenc.config import EncoderConfig, load_config
from seqenc.encoder import Encoder
from seqenc.errors import ConfigurationError
from seqenc.generators.random import RandomSequenceGenerator
from seqenc.inputs.embedding import WordEmbedding
from seqenc.manager.bench_manager import BenchManager
from seqenc.registry import all_cell_names, all_input_names, get_cell, get_input
from seqenc.results import (
    default_results_path,
    append_results,
    overwrite_results,
    load_existing_rows,
    get_next_run_id,
)

ENCODER_KEYS = [
    "cell_type", "layers", "hidden_size", "dropout", "dropout_input",
    "dropout_words", "dropout_type", "residual",
]

# Keys that can be swept (list = dimension) or fixed (scalar). Used by sweep command.
# encoder.* are flattened into the config (e.g. encoder.layers -> layers).
SWEEP_PARAM_KEYS = [
    *ENCODER_KEYS,
    "embedding_size", "vocabulary_size", "sequence_length", "min_length",
    "batch_size", "steps", "report_every", "seed",
]
SWEEP_DEFAULTS = {
    "cell_type": "LSTM",
    "layers": 2,
    "hidden_size": 128,
    "dropout": 0.0,
    "dropout_input": 0.0,
    "dropout_words": 0.0,
    "dropout_type": "naive",
    "residual": False,
    "embedding_size": 64,
    "vocabulary_size": 1000,
    "sequence_length": 32,
    "min_length": None,
    "batch_size": 64,
    "steps": 20,
    "report_every": 10,
    "seed": None,
}
DISPLAY_PARAMS = ["layers", "hidden_size"]


def _flatten_encoder_params(config: dict) -> dict:
    """Merge the encoder section into flat config. encoder.layers -> layers."""
    cfg = dict(config)
    if "encoder" in cfg and isinstance(cfg["encoder"], dict):
        params = cfg.pop("encoder")
        for k, v in params.items():
            cfg[k] = v
    return cfg


def _expand_sweep_config(config: dict) -> list[dict]:
    """
    One run config per point of the grid spanned by the list-valued keys.
    Unknown keys and invalid encoder options are rejected before anything runs.
    """
    cfg = _flatten_encoder_params(config)
    unknown = sorted(set(cfg) - set(SWEEP_PARAM_KEYS))
    if unknown:
        raise ConfigurationError(f"Unknown sweep key(s): {', '.join(unknown)}")
    merged = {k: cfg.get(k, SWEEP_DEFAULTS.get(k)) for k in SWEEP_PARAM_KEYS}
    grid_keys = [k for k, v in merged.items() if isinstance(v, list)]
    run_configs = [
        {**merged, **dict(zip(grid_keys, combo))}
        for combo in itertools.product(*(merged[k] for k in grid_keys))
    ]
    for rc in run_configs:
        EncoderConfig.from_dict({k: rc[k] for k in ENCODER_KEYS})
    return run_configs


def _base_cell_name(cell_val) -> str:
    """Extract base cell name from display string like 'LSTM(layers=2, hidden_size=64)'."""
    s = str(cell_val or "LSTM")
    return s.split("(")[0].strip() if "(" in s else s


def _format_cell_column(run_config: dict) -> str:
    """Build cell column value: base name + params, e.g. 'LSTM(layers=2, hidden_size=64)'."""
    base = _base_cell_name(run_config.get("cell_type", "LSTM"))
    parts = [f"{k}={run_config.get(k)}" for k in DISPLAY_PARAMS if run_config.get(k) is not None]
    if not parts:
        return base
    return f"{base}({', '.join(parts)})"


def _int_or_none(v):
    if v is None or (isinstance(v, float) and pd.isna(v)):
        return None
    return int(v)


def _config_signature(cfg: dict) -> tuple:
    """Hashable signature for deduplication. cfg can be a run_config or a results row."""
    residual = cfg.get("residual", False)
    if isinstance(residual, float) and pd.isna(residual):
        residual = False
    return (
        _base_cell_name(cfg.get("cell_type")),
        _int_or_none(cfg.get("layers")),
        _int_or_none(cfg.get("hidden_size")),
        str(cfg.get("dropout_type") or "naive"),
        bool(residual),
        _int_or_none(cfg.get("embedding_size")),
        _int_or_none(cfg.get("vocabulary_size") or cfg.get("vocab_size")),
        _int_or_none(cfg.get("sequence_length") or cfg.get("seq_len")),
        _int_or_none(cfg.get("min_length")),
        _int_or_none(cfg.get("batch_size")),
        _int_or_none(cfg.get("steps")),
        _int_or_none(cfg.get("seed")),
    )


def _get_device(name: str) -> torch.device:
    if name == "cuda" and not torch.cuda.is_available():
        raise ConfigurationError("--device cuda requested but no GPU is available")
    if name == "auto":
        name = "cuda" if torch.cuda.is_available() else "cpu"
    print(f"Using device: {name}")
    return torch.device(name)


def _build_encoder_and_generator(run_config: dict):
    """Build the embedding input network, the encoder and a random batch generator from a flat run config."""
    try:
        enc_config = EncoderConfig.from_dict({k: run_config[k] for k in ENCODER_KEYS if run_config.get(k) is not None})
    except ConfigurationError as e:
        raise SystemExit(f"Invalid encoder options: {e}")
    vocab_size = int(run_config["vocabulary_size"])
    seq_len = int(run_config["sequence_length"])
    min_len = _int_or_none(run_config.get("min_length"))
    input_net = WordEmbedding(vocab_size, int(run_config["embedding_size"]))
    encoder = Encoder(enc_config, input_net)
    generator = RandomSequenceGenerator(seq_len=seq_len, vocab_size=vocab_size, min_len=min_len)
    return encoder, generator


def _run_config_from_args(args, config: dict) -> dict:
    """Build a flat run config from args + config. CLI values win over the config file."""
    cfg = {**SWEEP_DEFAULTS, **_flatten_encoder_params(config)}
    overrides = {
        "cell_type": args.cell_type,
        "layers": args.layers,
        "hidden_size": args.hidden_size,
        "dropout": args.dropout,
        "dropout_input": args.dropout_input,
        "dropout_words": args.dropout_words,
        "dropout_type": args.dropout_type,
        "residual": args.residual,
        "embedding_size": args.embedding_size,
        "vocabulary_size": args.vocab_size,
        "sequence_length": args.seq_len,
        "min_length": args.min_len,
        "batch_size": args.batch_size,
        "steps": args.steps,
        "report_every": args.report_every,
        "seed": args.seed,
    }
    cfg.update({k: v for k, v in overrides.items() if v is not None})
    return {k: cfg.get(k) for k in SWEEP_PARAM_KEYS}


def _summary_row(run_config: dict, history: list[dict], run_id: int) -> dict:
    last = history[-1] if history else {}
    return {
        "run_id": run_id,
        "cell": _format_cell_column(run_config),
        "cell_type": _base_cell_name(run_config.get("cell_type")),
        "layers": run_config["layers"],
        "hidden_size": run_config["hidden_size"],
        "dropout_type": run_config.get("dropout_type", "naive"),
        "residual": bool(run_config.get("residual", False)),
        "embedding_size": run_config["embedding_size"],
        "vocab_size": run_config["vocabulary_size"],
        "seq_len": run_config["sequence_length"],
        "min_length": run_config.get("min_length"),
        "batch_size": run_config["batch_size"],
        "steps": run_config["steps"],
        "seed": run_config.get("seed"),
        "forward_ms": last.get("forward_ms"),
        "backward_ms": last.get("backward_ms"),
        "eval_ms": last.get("eval_ms"),
        "tokens_per_sec": last.get("tokens_per_sec"),
    }


def _run_one_benchmark(run_config: dict, device: torch.device, run_id: int) -> dict:
    """Run a single benchmark from a run config; return one summary row (params + timings)."""
    if run_config.get("seed") is not None:
        torch.manual_seed(run_config["seed"])
    encoder, generator = _build_encoder_and_generator(run_config)
    encoder = encoder.to(device)
    manager = BenchManager(encoder=encoder, generator=generator, device=device)
    steps = int(run_config.get("steps") or SWEEP_DEFAULTS["steps"])
    batch_size = int(run_config.get("batch_size") or SWEEP_DEFAULTS["batch_size"])
    report_every = int(run_config.get("report_every") or SWEEP_DEFAULTS["report_every"])
    history = manager.run(n_steps=steps, batch_size=batch_size, report_every=min(report_every, steps))
    return _summary_row(run_config, history, run_id)


def cmd_run(args):
    config = {}
    if getattr(args, "config", None):
        config = load_config(args.config)
    run_config = _run_config_from_args(args, config)
    device = _get_device(getattr(args, "device", "auto"))

    if run_config.get("seed") is not None:
        torch.manual_seed(run_config["seed"])
    encoder, generator = _build_encoder_and_generator(run_config)
    encoder = encoder.to(device)
    manager = BenchManager(encoder=encoder, generator=generator, device=device)
    steps = int(run_config["steps"])
    history = manager.run(
        n_steps=steps,
        batch_size=int(run_config["batch_size"]),
        report_every=min(int(run_config["report_every"]), steps),
    )

    # Optional: write step-level history to file
    out_path = getattr(args, "output", None)
    if out_path:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        with open(out_path, "w", newline="") as f:
            w = csv.DictWriter(
                f,
                fieldnames=["step", "forward_ms", "backward_ms", "eval_ms", "tokens_per_sec"],
            )
            w.writeheader()
            w.writerows(history)
        print(f"Wrote history to {out_path}")

    if args.save:
        encoder.save(args.save)
        print(f"Saved encoder to {args.save}")

    # Append summary to main results (unless --no-append-summary)
    if not getattr(args, "no_append_summary", False):
        row = _summary_row(run_config, history, get_next_run_id())
        results_path = append_results([row])
        print(f"Appended summary to {results_path}")


def _sweep_section(config: dict) -> dict:
    """Top-level keys are defaults; a nested 'sweep' mapping overrides them."""
    section = config.get("sweep")
    if not isinstance(section, dict):
        return config
    return {**{k: v for k, v in config.items() if k != "sweep"}, **section}


def _pending_configs(run_configs: list[dict], out_path: Path, overwrite: bool) -> tuple[list[dict], list[dict]]:
    """Split off configurations whose signature is already in the results file."""
    if overwrite or not out_path.exists():
        return [], run_configs
    try:
        existing_rows, explored = load_existing_rows(out_path, _config_signature)
    except IOError as e:
        print(f"Could not load existing results ({e}), starting fresh")
        return [], run_configs
    pending = [rc for rc in run_configs if _config_signature(rc) not in explored]
    print(
        f"{out_path}: {len(existing_rows)} existing row(s), "
        f"{len(run_configs) - len(pending)} of {len(run_configs)} configuration(s) already benchmarked"
    )
    return existing_rows, pending


def cmd_sweep(args):
    """Benchmark every grid point of a sweep config that has no row in the results file yet."""
    run_configs = _expand_sweep_config(_sweep_section(load_config(args.config)))
    out_path = Path(args.output) if args.output else default_results_path()
    existing_rows, to_run = _pending_configs(run_configs, out_path, args.overwrite)
    if not to_run:
        print("No new configurations to run.")
        return

    device = _get_device(args.device)
    rows = []
    for i, run_config in enumerate(to_run):
        print(f"  [{i + 1}/{len(to_run)}] {_format_cell_column(run_config)} seq_len={run_config['sequence_length']}")
        rows.append(_run_one_benchmark(run_config, device, run_id=len(existing_rows) + i))

    if args.overwrite:
        written = overwrite_results(rows, out_path)
    else:
        written = append_results(rows, out_path)
    print(f"Wrote {len(rows)} new row(s) to {written}")


def cmd_list(args):
    if args.cells:
        print("Cells:")
        for name in all_cell_names():
            info = get_cell(name)
            print(f"  {name:12} – {info['description']} ({info['num_states_per_layer']} state(s) per layer)")
        return
    if args.inputs:
        print("Input networks:")
        for name in all_input_names():
            info = get_input(name)
            print(f"  {name:12} – {info['description']} ({', '.join(info['constructor_params'])})")
        return
    if args.config:
        print("Defaults (use seqenc run -c path/to/config.yaml to override):")
        for k in SWEEP_PARAM_KEYS:
            print(f"  {k}: {SWEEP_DEFAULTS.get(k)}")
        return
    # default: summary
    print("SeqEnc (seqenc) – recurrent encoder with explicit BPTT")
    print()
    print(f"Cells:   {', '.join(all_cell_names())}")
    print(f"Inputs:  {', '.join(all_input_names())}")
    print()
    print("Usage:   seqenc run [options]")
    print("         seqenc sweep -c <sweep.yaml> [-o bench.csv]  (one config, many params)")
    print("         seqenc list [--cells | --inputs | --config]")


def cmd_version(args):
    try:
        print(version("seqenc"))
    except PackageNotFoundError:
        print("Version unknown (package not installed)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="seqenc",
        description="SeqEnc CLI: benchmark recurrent encoders and list cells.",
    )
    parser.add_argument("--log-level", default="WARNING", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    subparsers = parser.add_subparsers(dest="command", required=True)

    # run
    run_p = subparsers.add_parser("run", help="Benchmark one encoder configuration")
    EncoderConfig.add_arguments(run_p)
    run_p.add_argument("--embedding-size", type=int, default=None, help="Word embedding size")
    run_p.add_argument("--vocab-size", type=int, default=None, help="Vocabulary size")
    run_p.add_argument("--seq-len", type=int, default=None, help="Source length")
    run_p.add_argument("--min-len", type=int, default=None, help="Minimum sequence length (enables left padding)")
    run_p.add_argument("-n", "--steps", type=int, default=None, help="Benchmark steps")
    run_p.add_argument("-b", "--batch-size", type=int, default=None, help="Batch size")
    run_p.add_argument("--report-every", type=int, default=None, help="Report every N steps")
    run_p.add_argument("-o", "--output", default=None, help="Path for step-level history (optional)")
    run_p.add_argument("--save", default=None, help="Save the encoder to this path after the run")
    run_p.add_argument("--no-append-summary", action="store_true", help="Do not append summary to data/bench.*")
    run_p.add_argument("-c", "--config", default=None, help="YAML config path (overridden by CLI)")
    run_p.add_argument("--device", default="auto", choices=["auto", "cpu", "cuda"], help="Device")
    run_p.add_argument("--seed", type=int, default=None, help="Random seed")
    run_p.set_defaults(func=cmd_run)

    # sweep: one config file, list values = parameter grid (Cartesian product)
    sweep_p = subparsers.add_parser(
        "sweep",
        help="Run many benchmarks from one YAML; use lists to sweep parameters.",
    )
    sweep_p.add_argument(
        "-c", "--config",
        required=True,
        help="Sweep YAML path (e.g. configs/sweep.yaml). List values = grid dimension.",
    )
    sweep_p.add_argument(
        "-o", "--output",
        default=None,
        help="Results path (default: data/bench.csv or .parquet)",
    )
    sweep_p.add_argument("--overwrite", action="store_true", help="Replace results file instead of appending")
    sweep_p.add_argument("--device", default="auto", choices=["auto", "cpu", "cuda"], help="Device")
    sweep_p.set_defaults(func=cmd_sweep)

    # list
    list_p = subparsers.add_parser("list", help="List cells, input networks, or default config")
    list_p.add_argument("--cells", action="store_true", help="List available cells")
    list_p.add_argument("--inputs", action="store_true", help="List available input networks")
    list_p.add_argument("--config", action="store_true", help="Show default config values")
    list_p.set_defaults(func=cmd_list)

    # version
    version_p = subparsers.add_parser("version", help="Show SeqEnc version")
    version_p.set_defaults(func=cmd_version)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    args.func(args)


if __name__ == "__main__":
    main()
