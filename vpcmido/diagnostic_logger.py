#!/usr/bin/env python3
"""
Diagnostic Logger for the VPC MidoNet driver

Configures process logging and collects per-run diagnostics: every entity a
reconciliation run touched, whether it converged, and the warnings (skipped
routes, unsupported rules) raised along the way. The collected report is the
per-entity success/failure summary returned by a run.
"""

import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logger = logging.getLogger("vpcmido.diagnostic")


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None):
    """Configure the root logger once with stdout and optional file output."""
    if getattr(setup_logging, "_configured", False):
        return

    handlers: List[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    log_dir = log_dir or os.getenv("VPCMIDO_LOG_DIR")
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, "vpcmido.log")))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
    setattr(setup_logging, "_configured", True)


class DiagnosticLogger:
    """Collects errors, warnings and entity outcomes for one run."""

    def __init__(self):
        self.start_time = datetime.now()
        self.errors: List[Dict[str, Any]] = []
        self.warnings: List[Dict[str, Any]] = []
        self.entities: Dict[str, Dict[str, Any]] = {}

    def log_error(self, error_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log an error with context."""
        self.errors.append({
            "timestamp": datetime.now().isoformat(),
            "error": error_msg,
            "context": context or {},
        })
        logger.error(f"ERROR: {error_msg}")
        if context:
            logger.error(f"Context: {json.dumps(context, sort_keys=True)}")

    def log_warning(self, warning_msg: str, context: Optional[Dict[str, Any]] = None):
        """Log a warning with context."""
        self.warnings.append({
            "timestamp": datetime.now().isoformat(),
            "warning": warning_msg,
            "context": context or {},
        })
        logger.warning(f"WARNING: {warning_msg}")
        if context:
            logger.warning(f"Context: {json.dumps(context, sort_keys=True)}")

    def log_success(self, success_msg: str):
        logger.info(f"SUCCESS: {success_msg}")

    def record_entity(self, kind: str, name: str, ok: bool, message: str = ""):
        """
        Record the outcome for one entity. A failure is sticky: once an
        entity failed in a run, later successes do not clear it.
        """
        key = f"{kind}/{name}"
        previous = self.entities.get(key)
        if previous is not None and not previous["ok"]:
            return
        self.entities[key] = {"kind": kind, "name": name, "ok": ok, "message": message}
        if not ok:
            self.log_error(f"{kind} {name} did not converge: {message}", {"kind": kind, "name": name})

    @property
    def failed_entities(self) -> List[str]:
        return sorted(k for k, v in self.entities.items() if not v["ok"])

    def generate_report(self, report_path: Optional[str] = None) -> Dict[str, Any]:
        """Generate a diagnostic report, optionally saving it as JSON."""
        report = {
            "start_time": self.start_time.isoformat(),
            "end_time": datetime.now().isoformat(),
            "entities": self.entities,
            "failed_entities": self.failed_entities,
            "errors": self.errors,
            "warnings": self.warnings,
            "total_errors": len(self.errors),
            "total_warnings": len(self.warnings),
        }

        if report_path:
            path = Path(report_path)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(report, indent=2), encoding="utf-8")
            logger.info(f"Report saved to: {report_path}")

        return report
