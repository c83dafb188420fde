"""Step-tagged log lines for the billing functions."""

import json


def log_step(tag: str, step: str, details=None):
    """Print `[TAG] step - {details}` to stdout and flush."""
    details_str = f" - {json.dumps(details, default=str)}" if details else ''
    print(f"[{tag}] {step}{details_str}", flush=True)
