"""
Methods logging for NerveIMC.

Every operation that produces an output is appended to a JSON Lines file so
that the parameters of a run can be reconstructed for a methods section.
"""

import os
import json
import threading
from datetime import datetime
from typing import Dict, Any, Optional, List
from pathlib import Path


class MethodsLogger:
    """
    Logger for recording all analysis operations with detailed parameters.
    
    Logs are appended to a file to preserve history across sessions.
    Each entry is a structured JSON object with timestamp and operation details.
    """
    
    def __init__(self, log_file: Optional[str] = None):
        """
        Initialize the logger.
        
        Args:
            log_file: Path to log file. If None, uses logs/methods_log.jsonl
                in the project folder.
        """
        if log_file is None:
            # Navigate from nerveimc/utils/logger.py to project root
            project_root = Path(__file__).resolve().parent.parent.parent
            log_dir = project_root / "logs"
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = str(log_dir / "methods_log.jsonl")
        else:
            log_dir = Path(log_file).parent
            log_dir.mkdir(parents=True, exist_ok=True)
        
        self.log_file = log_file
        self._lock = threading.Lock()
        self._ensure_log_file()
    
    def _ensure_log_file(self):
        """Ensure log file exists and write a metadata entry if new."""
        if not os.path.exists(self.log_file):
            with open(self.log_file, 'w') as f:
                metadata = {
                    "type": "log_metadata",
                    "timestamp": datetime.now().isoformat(),
                    "description": "NerveIMC Methods Log - This file records all analysis operations",
                    "format": "JSON Lines (one JSON object per line)"
                }
                f.write(json.dumps(metadata) + "\n")
    
    def _write_entry(self, entry_type: str, operation: str, parameters: Dict[str, Any],
                    samples: Optional[List[str]] = None,
                    output_path: Optional[str] = None,
                    notes: Optional[str] = None):
        """
        Write a log entry.
        
        Args:
            entry_type: Type of operation (e.g., "hotspot_detection", "grid_binning")
            operation: Specific operation name (e.g., "watershed")
            parameters: Dictionary of parameters used
            samples: List of sample IDs affected
            output_path: Path to output file if applicable
            notes: Additional notes or comments
        """
        entry = {
            "timestamp": datetime.now().isoformat(),
            "type": entry_type,
            "operation": operation,
            "parameters": parameters,
            "samples": samples if samples else [],
            "output_path": output_path,
            "notes": notes
        }
        
        with self._lock:
            with open(self.log_file, 'a') as f:
                f.write(json.dumps(entry, default=str) + "\n")
    
    def log_hotspot_detection(self, parameters: Dict[str, Any], samples: List[str], **kwargs):
        """
        Log watershed hotspot detection and area filtering.
        
        Args:
            parameters: tolerance, extension radius, area percentile, cutoffs
            samples: Sample IDs processed
            **kwargs: Additional fields (output_path, notes)
        """
        self._write_entry(
            entry_type="hotspot_detection",
            operation="watershed",
            parameters=parameters,
            samples=samples,
            output_path=kwargs.get("output_path"),
            notes=kwargs.get("notes")
        )
    
    def log_fusion(self, collapse_rules: Dict[str, Any], samples: List[str], **kwargs):
        """Log fusion of hotspots with single-cell records."""
        params = {
            "collapse_rules": {str(k): list(v) for k, v in (collapse_rules or {}).items()},
            "hotspot_label": kwargs.get("hotspot_label"),
            "categories": kwargs.get("categories"),
        }
        self._write_entry(
            entry_type="fusion",
            operation="fuse_records",
            parameters=params,
            samples=samples,
            output_path=kwargs.get("output_path"),
            notes=kwargs.get("notes")
        )
    
    def log_grid_binning(self, parameters: Dict[str, Any], samples: List[str], **kwargs):
        """Log spatial grid aggregation (step, extent, target category)."""
        self._write_entry(
            entry_type="grid_binning",
            operation="bin_points",
            parameters=parameters,
            samples=samples,
            output_path=kwargs.get("output_path"),
            notes=kwargs.get("notes")
        )
    
    def log_spatial_analysis(self, analysis_type: str,
                            parameters: Dict[str, Any],
                            **kwargs):
        """
        Log a spatial analysis operation.
        
        Args:
            analysis_type: Type of analysis ("neighborhood_enrichment", ...)
            parameters: Analysis-specific parameters
            **kwargs: Additional fields (samples, output_path, notes)
        """
        self._write_entry(
            entry_type="spatial_analysis",
            operation=analysis_type,
            parameters=parameters,
            samples=kwargs.get("samples", []),
            output_path=kwargs.get("output_path"),
            notes=kwargs.get("notes")
        )
    
    def log_run_summary(self, succeeded: List[str], skipped: Dict[str, str], **kwargs):
        """Log which samples a cohort run processed and which it skipped."""
        self._write_entry(
            entry_type="run_summary",
            operation="run_cohort",
            parameters={"succeeded": succeeded, "skipped": skipped},
            samples=list(succeeded) + list(skipped),
            output_path=kwargs.get("output_path"),
            notes=kwargs.get("notes")
        )
    
    def log_export(self, export_type: str, parameters: Dict[str, Any],
                  output_path: str, **kwargs):
        """
        Log an export operation.
        
        Args:
            export_type: Type of export ("csv", "txt", ...)
            parameters: Export parameters
            output_path: Path to exported file
            **kwargs: Additional fields (samples, notes)
        """
        params = parameters.copy()
        params["export_type"] = export_type
        
        self._write_entry(
            entry_type="export",
            operation="export_data",
            parameters=params,
            samples=kwargs.get("samples", []),
            output_path=output_path,
            notes=kwargs.get("notes")
        )
    
    def get_log_file_path(self) -> str:
        """Get the path to the log file."""
        return self.log_file


# Global logger instance
_logger_instance: Optional[MethodsLogger] = None


def get_logger(log_file: Optional[str] = None) -> MethodsLogger:
    """
    Get or create the global logger instance.
    
    Args:
        log_file: Optional path to log file (only used on first call)
    
    Returns:
        MethodsLogger instance
    """
    global _logger_instance
    if _logger_instance is None:
        _logger_instance = MethodsLogger(log_file)
    return _logger_instance


def set_log_file(log_file: str):
    """
    Set a custom log file path (creates new logger instance).
    
    Args:
        log_file: Path to log file
    """
    global _logger_instance
    _logger_instance = MethodsLogger(log_file)
