# mlxbox/app.py
"""
MLXBox - local runtime supervisor for MLX models

Command-line entry point (`mlxbox`). Each subcommand drives one service:

    mlxbox bootstrap [--repair]
    mlxbox serve MODEL [--host H] [--port P] [--adapter DIR]
    mlxbox scaffold NAME [--format chat|completions|text|tools]
    mlxbox train MODEL_ID MODEL_PATH DATASET [--iters N] [--batch-size B] [--learning-rate LR]
    mlxbox adapters [--json]
    mlxbox scan [--json]
    mlxbox models list|install|delete
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Optional, Sequence

from mlxbox import __app_name__, __version__

logger = logging.getLogger(__name__)


def setup_logging(logs_dir: Optional[Path] = None, verbose: bool = False):
    """Configure logging to console and file.

    Log file location: <runtime root>/logs/mlxbox.log (append mode)

    Returns:
        tuple: (console_handler, file_handler) to keep references alive
    """
    if logs_dir is None:
        from mlxbox.config.settings import get_default_runtime_root
        logs_dir = get_default_runtime_root() / "logs"
    log_file_path = logs_dir / "mlxbox.log"

    # Create console handler first (always works)
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S'
    ))

    file_handler = None
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file_path, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
    except OSError as e:
        # Fall back to console-only logging
        print(f"[WARNING] Failed to create log file {log_file_path}: {e}", file=sys.stderr)
        file_handler = None

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    root_logger.addHandler(console_handler)
    if file_handler:
        root_logger.addHandler(file_handler)

    # Suppress verbose logging from third-party libraries
    for name in ['httpcore', 'httpx', 'asyncio', 'concurrent']:
        logging.getLogger(name).setLevel(logging.WARNING)

    logger.debug("%s %s starting (pid=%d)", __app_name__, __version__, os.getpid())
    logger.debug("sys.argv: %s", sys.argv)
    if file_handler:
        logger.debug("Log file: %s", log_file_path)

    return console_handler, file_handler


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


# --- subcommands ------------------------------------------------------------


def _cmd_bootstrap(args, paths, settings) -> int:
    from mlxbox.services.runtime_bootstrap import bootstrap

    report = bootstrap(repair=args.repair, paths=paths, settings=settings)
    if args.json:
        _print_json([
            {"name": r.name, "state": r.state.value, "detail": r.detail}
            for r in report.results
        ])
    else:
        for r in report.results:
            print(f"{r.name:<14} {r.state.value:<10} {r.detail}")
    return 0 if report.succeeded else 1


def _cmd_serve(args, paths, settings) -> int:
    from mlxbox.services.local_model_server import LocalModelServerController

    controller = LocalModelServerController(paths=paths, settings=settings)
    handle = controller.start(args.model, host=args.host, port=args.port, adapter_path=args.adapter)
    print(f"Serving {handle.model_path} at {handle.base_url} (pid {handle.pid}). Press Ctrl-C to stop.")
    try:
        while controller.is_running():
            time.sleep(1.0)
        logger.warning("Local model server exited; see %s", controller.get_log_path())
        return 1
    except KeyboardInterrupt:
        return 0
    finally:
        controller.stop()


def _cmd_scaffold(args, paths, settings) -> int:
    from mlxbox.models.types import TrainingDatasetFormat
    from mlxbox.services.post_training import PostTrainingManager

    manager = PostTrainingManager(paths=paths, settings=settings)
    result = manager.create_dataset_scaffold(args.name, TrainingDatasetFormat(args.format))
    print(result.dataset_directory)
    return 0


def _cmd_train(args, paths, settings) -> int:
    from mlxbox.services.post_training import PostTrainingManager

    manager = PostTrainingManager(paths=paths, settings=settings)
    result = manager.run_lora_training(
        args.model_id,
        args.model_path,
        args.dataset,
        iterations=args.iters,
        learning_rate=args.learning_rate,
        batch_size=args.batch_size,
    )
    print(result.log)
    print(f"Adapter directory: {result.adapter_path}")
    return result.exit_code


def _cmd_adapters(args, paths, settings) -> int:
    from mlxbox.services import adapter_registry

    adapters = adapter_registry.scan(paths)
    if args.json:
        _print_json([
            {
                "path": str(a.path),
                "modelID": a.model_id_hint,
                "createdAt": a.created_at.isoformat(),
            }
            for a in adapters
        ])
    else:
        for a in adapters:
            print(f"{a.created_at:%Y-%m-%d %H:%M}  {a.display_name}  {a.model_id_hint or '-'}")
    return 0


def _cmd_scan(args, paths, settings) -> int:
    from mlxbox.services.endpoint_scanner import scan_localhost

    candidates = scan_localhost(settings=settings)
    if args.json:
        _print_json([
            {
                "baseURL": c.base_url,
                "path": c.probe_path,
                "status": c.status_code,
                "signature": c.signature,
                "modelHint": c.model_hint,
            }
            for c in candidates
        ])
    else:
        for c in candidates:
            hint = f"  -> {c.model_hint}" if c.model_hint else ""
            print(f"{c.id}  [{c.status_code}] {c.signature}{hint}")
    return 0


def _cmd_models(args, paths, settings) -> int:
    from mlxbox.services.model_install import ModelInstallManager

    manager = ModelInstallManager(paths=paths)
    if args.models_command == "install":
        token = args.token or os.environ.get("HF_TOKEN") or None
        print(manager.install(args.model_id, token=token))
        return 0
    if args.models_command == "delete":
        if not manager.delete(args.model_id):
            print(f"{args.model_id} is not installed.")
        return 0

    ids = manager.installed_model_ids()
    if getattr(args, "json", False):
        _print_json(ids)
    else:
        for model_id in ids:
            print(model_id)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mlxbox", description=f"{__app_name__} local runtime supervisor")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--root",
        type=Path,
        default=None,
        help="Runtime root directory (default: $MLXBOX_HOME or ~/.mlxbox).",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to the console.")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("bootstrap", help="Install or repair the local runtime.")
    p.add_argument("--repair", action="store_true", help="Reinstall even when the runtime looks healthy.")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_cmd_bootstrap)

    p = sub.add_parser("serve", help="Run the inference server until Ctrl-C.")
    p.add_argument("model", help="Model id or local model directory.")
    p.add_argument("--host", default=None)
    p.add_argument("--port", type=int, default=None)
    p.add_argument("--adapter", default=None, help="LoRA adapter directory.")
    p.set_defaults(func=_cmd_serve)

    p = sub.add_parser("scaffold", help="Create a training dataset folder.")
    p.add_argument("name")
    p.add_argument("--format", choices=["chat", "completions", "text", "tools"], default="chat")
    p.set_defaults(func=_cmd_scaffold)

    p = sub.add_parser("train", help="Run LoRA post-training.")
    p.add_argument("model_id")
    p.add_argument("model_path")
    p.add_argument("dataset", help="Dataset directory containing train.jsonl.")
    p.add_argument("--iters", type=int, default=None)
    p.add_argument("--batch-size", type=int, default=None)
    p.add_argument("--learning-rate", default=None)
    p.set_defaults(func=_cmd_train)

    p = sub.add_parser("adapters", help="List trained adapters, newest first.")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_cmd_adapters)

    p = sub.add_parser("scan", help="Find local HTTP model services.")
    p.add_argument("--json", action="store_true")
    p.set_defaults(func=_cmd_scan)

    p = sub.add_parser("models", help="Manage downloaded models.")
    models_sub = p.add_subparsers(dest="models_command")
    list_models = models_sub.add_parser("list", help="List installed models.")
    list_models.add_argument("--json", action="store_true")
    install = models_sub.add_parser("install", help="Download a model from Hugging Face.")
    install.add_argument("model_id")
    install.add_argument("--token", default=None)
    delete = models_sub.add_parser("delete", help="Remove a downloaded model.")
    delete.add_argument("model_id")
    p.set_defaults(func=_cmd_models, models_command="list")

    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.root is not None:
        os.environ["MLXBOX_HOME"] = str(args.root)

    from mlxbox.config.settings import AppSettings, get_default_settings_path
    from mlxbox.services.exceptions import RuntimeSupervisorError
    from mlxbox.services.runtime_paths import RuntimePaths

    paths = RuntimePaths(args.root)
    _handlers = setup_logging(paths.root / "logs", verbose=args.verbose)  # noqa: F841
    settings = AppSettings.load(get_default_settings_path())

    try:
        return int(args.func(args, paths, settings))
    except RuntimeSupervisorError as e:
        logger.error("%s", e)
        return 2
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
