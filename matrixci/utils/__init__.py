from .shared import ensure_root_logging, setup_logging, slug_run_id

__all__ = ["ensure_root_logging", "setup_logging", "slug_run_id"]
