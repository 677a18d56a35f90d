# src/her2amp/main.py
import os
import sys
import time
import argparse
import traceback
from typing import Callable, Dict, List, Tuple

from .config import load_config

# -----------------------------
# Config loader
# -----------------------------
def _load_config_or_exit() -> Tuple[str, dict]:
    cfg_path = os.getenv("CONFIG_PATH", "config/pipeline_config.yaml")
    try:
        cfg = load_config(cfg_path)
    except FileNotFoundError:
        print(f"[ERROR] CONFIG_PATH points to missing file: {cfg_path}", file=sys.stderr)
        sys.exit(2)
    os.environ["CONFIG_PATH"] = cfg_path
    return cfg_path, cfg

# -----------------------------
# Missing-step helper
# -----------------------------
def _missing(module_file: str, func_sig: str, err_msg: str):
    msg = (
        f"[ERROR] Missing or invalid step: need {module_file} with a public function {func_sig}\n"
        f"        Import error: {err_msg}"
    )
    print(msg, file=sys.stderr)
    sys.exit(3)

# -----------------------------
# Step registry (imports are lazy & error-wrapped)
# -----------------------------
def _load_step_funcs() -> Dict[str, Callable[[dict], object]]:
    steps: Dict[str, Callable[[dict], object]] = {}

    # data_integrate (integrator.py)
    try:
        from .integrator import data_integrate as _data_integrate
        steps["data_integrate"] = _data_integrate
    except Exception as e:
        err_msg = f"{type(e).__name__}: {e}"
        steps["data_integrate"] = (lambda cfg, err_msg=err_msg: _missing("integrator.py", "data_integrate(cfg)", err_msg))

    # diff_expr (diff_expr.py)
    try:
        from .diff_expr import run_diff_expr as _run_diff_expr
        steps["diff_expr"] = _run_diff_expr
    except Exception as e:
        err_msg = f"{type(e).__name__}: {e}"
        steps["diff_expr"] = (lambda cfg, err_msg=err_msg: _missing("diff_expr.py", "run_diff_expr(cfg)", err_msg))

    # enrichment (enrichment.py)
    try:
        from .enrichment import run_enrichment as _run_enrichment
        steps["enrichment"] = _run_enrichment
    except Exception as e:
        err_msg = f"{type(e).__name__}: {e}"
        steps["enrichment"] = (lambda cfg, err_msg=err_msg: _missing("enrichment.py", "run_enrichment(cfg)", err_msg))

    # survival (survival.py)
    try:
        from .survival import run_survival as _run_survival
        steps["survival"] = _run_survival
    except Exception as e:
        err_msg = f"{type(e).__name__}: {e}"
        steps["survival"] = (lambda cfg, err_msg=err_msg: _missing("survival.py", "run_survival(cfg)", err_msg))

    return steps

DEFAULT_ORDER = [
    "data_integrate",
    "diff_expr",
    "enrichment",
    "survival",
]

# -----------------------------
# CLI & plan resolution
# -----------------------------
def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="HER2 amplification analysis pipeline driver")
    p.add_argument("--call", help="Single step or comma-list, e.g. data_integrate,diff_expr")
    p.add_argument("--all", action="store_true", help=f"Run: {', '.join(DEFAULT_ORDER)}")
    p.add_argument("--until", help="Run default sequence up to this step")
    p.add_argument("--continue-on-error", action="store_true", help="Do not stop on first failing step")
    p.add_argument("--debug", action="store_true", help="Show full Python tracebacks on errors")
    return p.parse_args(argv)

def _resolve_plan(args: argparse.Namespace) -> List[str]:
    if args.all:
        return DEFAULT_ORDER.copy()
    if args.until:
        if args.until not in DEFAULT_ORDER:
            print(f"[ERROR] --until must be one of: {', '.join(DEFAULT_ORDER)}", file=sys.stderr)
            sys.exit(2)
        return DEFAULT_ORDER[: DEFAULT_ORDER.index(args.until) + 1]
    if args.call:
        return [s.strip() for s in args.call.split(",") if s.strip()]
    print("[ERROR] Specify one of: --call, --all, or --until", file=sys.stderr)
    sys.exit(2)

# -----------------------------
# Step runner (with optional tracebacks)
# -----------------------------
def _run_step(name: str, fn: Callable[[dict], object], cfg: dict, *, debug: bool) -> Tuple[bool, str]:
    print(f"\n===== RUN {name} =====")
    t0 = time.time()
    status = "OK"
    try:
        fn(cfg)
    except SystemExit as se:
        status = f"FAIL (SystemExit {se.code})"
        if debug:
            print(traceback.format_exc(), file=sys.stderr)
        else:
            print(f"[ERROR] {name} raised SystemExit({se.code})", file=sys.stderr)
    except Exception as e:
        status = f"FAIL ({type(e).__name__}: {e})"
        if debug:
            print(traceback.format_exc(), file=sys.stderr)
        else:
            print(f"[ERROR] {type(e).__name__}: {e}", file=sys.stderr)
            print("  (run with --debug to see full traceback)", file=sys.stderr)
    dt = time.time() - t0
    print(f"===== DONE {name} [{status}] in {dt:.1f}s =====")
    return (status == "OK"), status

# -----------------------------
# Entry point
# -----------------------------
def main(argv=None):
    args = _parse_args(argv)
    cfg_path, cfg = _load_config_or_exit()
    step_funcs = _load_step_funcs()
    plan = _resolve_plan(args)

    unknown = [s for s in plan if s not in step_funcs]
    if unknown:
        print(f"[ERROR] Unknown step(s): {', '.join(unknown)}", file=sys.stderr)
        sys.exit(2)

    print(f"[INFO] Using config: {cfg_path}")
    print(f"[INFO] Plan: {' -> '.join(plan)}")

    start_all = time.time()
    any_fail = False

    for step in plan:
        fn = step_funcs[step]
        ok, _ = _run_step(step, fn, cfg, debug=args.debug)
        if not ok:
            any_fail = True
            if not args.continue_on_error:
                print(f"\nTotal: {time.time()-start_all:.1f}s")
                sys.exit(1)

    print(f"\nTotal: {time.time()-start_all:.1f}s")
    sys.exit(0 if not any_fail else 1)

if __name__ == "__main__":
    main()
