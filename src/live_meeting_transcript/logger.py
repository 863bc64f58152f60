"""
Transcript output for live meeting transcription.
Handles JSON/CSV file output and real-time console display of accepted segments.
"""

import bisect
import csv
import json
import logging
import os
import queue
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, TextIO

from .types import TranscriptSegment

logger = logging.getLogger(__name__)

UNKNOWN_SPEAKER = "Unknown"


class TranscriptionEntry:
    """Represents a single transcript line."""

    def __init__(
        self,
        start_time_ms: float,
        end_time_ms: float,
        speaker: str,
        text: str,
        confidence: Optional[float] = None,
        confirmed: bool = False,
        segment_id: Optional[str] = None,
    ):
        self.start_time_ms = start_time_ms
        self.end_time_ms = end_time_ms
        self.speaker = speaker or UNKNOWN_SPEAKER
        self.text = text.strip()
        self.confidence = confidence
        self.confirmed = confirmed
        self.segment_id = segment_id

        # Offsets are on the session's stream clock
        self.relative_time = max(0.0, start_time_ms / 1000.0)

    @classmethod
    def from_segment(cls, segment: TranscriptSegment, speaker: Optional[str] = None) -> "TranscriptionEntry":
        return cls(
            segment.start_time_ms,
            segment.end_time_ms,
            speaker or UNKNOWN_SPEAKER,
            segment.text,
            confidence=segment.confidence,
            confirmed=segment.confirmed,
            segment_id=segment.id,
        )

    def to_dict(self) -> Dict:
        """Convert to dictionary format."""
        return {
            "time": self.format_time(self.relative_time),
            "end": self.format_time(self.end_time_ms / 1000.0),
            "speaker": self.speaker,
            "text": self.text,
            "confidence": self.confidence,
            "confirmed": self.confirmed,
            "id": self.segment_id,
        }

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), ensure_ascii=False)

    def to_csv_row(self) -> List[str]:
        """Convert to CSV row format."""
        return [
            self.format_time(self.relative_time),
            self.format_time(self.end_time_ms / 1000.0),
            self.speaker,
            self.text,
            "" if self.confidence is None else f"{self.confidence:.2f}",
        ]

    @staticmethod
    def format_time(seconds: float) -> str:
        """Format time in HH:MM:SS.ms format."""
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        seconds = seconds % 60
        return f"{hours:02d}:{minutes:02d}:{seconds:06.3f}"

    def __str__(self) -> str:
        """String representation for console display."""
        time_str = self.format_time(self.relative_time)
        return f"[{time_str}] {self.speaker:10s}: {self.text}"


class TranscriptionLogger:
    """Writes accepted segments to JSONL and/or CSV files."""

    CSV_HEADER = ["Time", "End", "Speaker", "Text", "Confidence"]

    def __init__(
        self,
        output_file: Optional[str] = None,
        format_type: str = "json",
        console_output: bool = True,
        auto_flush: bool = True
    ):
        """
        Initialize the transcription logger.

        Args:
            output_file: Output path without extension. If None, creates timestamped filename.
            format_type: Output format ("json", "csv", or "both").
            console_output: Whether to display results in console.
            auto_flush: Whether to auto-flush after each write.
        """
        self.format_type = format_type
        self.console_output = console_output
        self.auto_flush = auto_flush

        # Session management
        self.session_start = time.time()
        self.entry_count = 0

        # File handles
        self.json_path: Optional[str] = None
        self.csv_path: Optional[str] = None
        self.json_file: Optional[TextIO] = None
        self.csv_file: Optional[TextIO] = None
        self.csv_writer = None

        # Threading
        self.write_queue = queue.Queue()
        self.is_running = False
        self.write_thread: Optional[threading.Thread] = None
        self.lock = threading.Lock()

        self._setup_output_files(output_file)

    def _setup_output_files(self, output_file: Optional[str]):
        """Setup output paths based on format type."""
        if output_file is None:
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            base_name = f"transcript_{timestamp}"
        else:
            base_name = str(Path(output_file).with_suffix(''))

        if self.format_type in ["json", "both"]:
            self.json_path = f"{base_name}.jsonl"
            logger.info(f"JSON output: {self.json_path}")

        if self.format_type in ["csv", "both"]:
            self.csv_path = f"{base_name}.csv"
            logger.info(f"CSV output: {self.csv_path}")

    def _open_files(self):
        """Open output files for writing."""
        try:
            if self.json_path:
                Path(self.json_path).parent.mkdir(parents=True, exist_ok=True)
                self.json_file = open(self.json_path, 'w', encoding='utf-8')

            if self.csv_path:
                Path(self.csv_path).parent.mkdir(parents=True, exist_ok=True)
                self.csv_file = open(self.csv_path, 'w', newline='', encoding='utf-8')
                self.csv_writer = csv.writer(self.csv_file)
                self.csv_writer.writerow(self.CSV_HEADER)
                if self.auto_flush:
                    self.csv_file.flush()

        except Exception as e:
            logger.error(f"Failed to open output files: {e}")
            raise

    def _close_files(self):
        """Close output files."""
        if self.json_file:
            self.json_file.close()
            self.json_file = None

        if self.csv_file:
            self.csv_file.close()
            self.csv_file = None
            self.csv_writer = None

    def _write_worker(self):
        """Background thread for writing entries to files."""
        while self.is_running or not self.write_queue.empty():
            try:
                item = self.write_queue.get(timeout=1.0)
            except queue.Empty:
                continue
            try:
                if isinstance(item, threading.Event):
                    # Flush marker: everything queued before it is written
                    self._flush_files()
                    item.set()
                else:
                    self._write_entry_to_files(item)
            except Exception as e:
                logger.error(f"Write worker error: {e}")

    def _flush_files(self):
        for handle in (self.json_file, self.csv_file):
            if handle:
                handle.flush()

    def _write_entry_to_files(self, entry: TranscriptionEntry):
        """Write a single entry to output files."""
        try:
            if self.json_file:
                self.json_file.write(entry.to_json() + '\n')
                if self.auto_flush:
                    self.json_file.flush()

            if self.csv_writer:
                self.csv_writer.writerow(entry.to_csv_row())
                if self.auto_flush:
                    self.csv_file.flush()

        except Exception as e:
            logger.error(f"Failed to write entry: {e}")

    def start(self):
        """Start the logger."""
        if self.is_running:
            return

        self.is_running = True
        self._open_files()

        self.write_thread = threading.Thread(target=self._write_worker, daemon=True)
        self.write_thread.start()

        logger.info("Transcription logger started")

    def stop(self):
        """Stop the logger and ensure all data is written."""
        if not self.is_running:
            return

        self.is_running = False

        # The worker drains the queue before exiting
        if self.write_thread:
            self.write_thread.join(timeout=5.0)

        self._close_files()
        logger.info("Transcription logger stopped")

    def log_segment(self, segment: TranscriptSegment, speaker: Optional[str] = None):
        """Log an accepted transcript segment."""
        if not self.is_running:
            logger.warning("Logger not started, ignoring segment")
            return

        entry = TranscriptionEntry.from_segment(segment, speaker)

        with self.lock:
            self.entry_count += 1

        if self.console_output:
            print(str(entry))

        self.write_queue.put(entry)

    def flush(self, timeout: Optional[float] = 5.0) -> bool:
        """
        Write out every entry logged so far and flush the output files.

        Returns False if the writer did not catch up within ``timeout`` seconds.
        """
        if not self.is_running or not self.write_thread or not self.write_thread.is_alive():
            self._flush_files()
            return True

        marker = threading.Event()
        self.write_queue.put(marker)
        done = marker.wait(timeout)
        if not done:
            logger.warning(f"Flush timed out with {self.write_queue.qsize()} entries pending")
        return done

    def get_statistics(self) -> Dict:
        """Get logging statistics."""
        with self.lock:
            return {
                "session_start": self.session_start,
                "session_duration": time.time() - self.session_start,
                "total_entries": self.entry_count,
                "queue_size": self.write_queue.qsize()
            }

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()


class RealTimeDisplay:
    """Real-time console display, ordered by segment start time.

    Segments may complete out of order; each one is inserted at its place
    on the timeline.
    """

    def __init__(self, max_lines: int = 20, show_timestamps: bool = True):
        self.max_lines = max_lines
        self.show_timestamps = show_timestamps
        self.lines: List[str] = []
        self._keys: List[float] = []
        self.lock = threading.Lock()

    def add_segment(self, segment: TranscriptSegment, speaker: Optional[str] = None):
        """Add a segment to the display."""
        entry = TranscriptionEntry.from_segment(segment, speaker)

        with self.lock:
            if self.show_timestamps:
                line = str(entry)
            else:
                line = f"{entry.speaker:10s}: {entry.text}"

            position = bisect.bisect_right(self._keys, segment.start_time_ms)
            self._keys.insert(position, segment.start_time_ms)
            self.lines.insert(position, line)

            # Keep only the latest max_lines
            while len(self.lines) > self.max_lines:
                self.lines.pop(0)
                self._keys.pop(0)

            self._redraw()

    def _redraw(self):
        """Redraw the console display."""
        os.system('cls' if os.name == 'nt' else 'clear')

        print("=" * 80)
        print("LIVE MEETING TRANSCRIPT")
        print("=" * 80)
        print()

        for line in self.lines:
            print(line)

        print()
        print("Press Ctrl+C to stop...")

    def clear(self):
        """Clear the display."""
        with self.lock:
            self.lines.clear()
            self._keys.clear()
            self._redraw()
