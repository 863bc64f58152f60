"""
Live Meeting Transcription
Command line entry point for the live transcription session.
"""

import argparse
import json
import logging
import signal
import sys
import threading
import time
from typing import List, Optional

from live_meeting_transcript.audio_capture import AudioCapture
from live_meeting_transcript.config import SessionConfig, load_config
from live_meeting_transcript.diarization import speaker_display_name
from live_meeting_transcript.logger import RealTimeDisplay, TranscriptionLogger
from live_meeting_transcript.session import LiveTranscriptSession
from live_meeting_transcript.speaker_matcher import CorrectionStore, SpeakerMatcher
from live_meeting_transcript.types import SpeakerProfile, TranscriptSegment
from live_meeting_transcript.vad import calibrate_vad

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def load_speakers(path: str) -> List[SpeakerProfile]:
    """Read known speaker profiles from a JSON list."""
    with open(path, 'r', encoding='utf-8') as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a JSON list of speakers")
    return [SpeakerProfile.from_dict(item) for item in data]


class LiveTranscriber:
    """Live meeting transcription application."""

    def __init__(
        self,
        config: Optional[SessionConfig] = None,
        output_file: Optional[str] = None,
        output_format: str = "json",
        speakers: Optional[List[SpeakerProfile]] = None,
        participant_ids: Optional[List[str]] = None,
        corrections_file: Optional[str] = None,
        calibrate: bool = False,
        real_time_display: bool = False,
    ):
        self.config = config or load_config()
        self.output_file = output_file
        self.output_format = output_format
        self.speakers = speakers or []
        self.participant_ids = participant_ids or []
        self.corrections_file = corrections_file
        self.calibrate = calibrate
        self.real_time_display = real_time_display

        # Components
        self.audio_capture: Optional[AudioCapture] = None
        self.session: Optional[LiveTranscriptSession] = None
        self.logger: Optional[TranscriptionLogger] = None
        self.display: Optional[RealTimeDisplay] = None

        # Control
        self.is_running = False
        self.shutdown_event = threading.Event()

        # Setup signal handlers
        signal.signal(signal.SIGINT, self._signal_handler)
        signal.signal(signal.SIGTERM, self._signal_handler)

        # Stats
        self.session_start = None
        self.segment_count = 0
        self.error_count = 0

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals."""
        logger.info(f"Received signal {signum}, shutting down...")
        self.shutdown_event.set()

    def _speaker_label(self, segment: TranscriptSegment) -> Optional[str]:
        name, is_suggestion = speaker_display_name(segment, self.speakers)
        if name and is_suggestion:
            return f"{name}?"
        return name

    def _segment_callback(self, segment: TranscriptSegment):
        """Handle accepted segments."""
        self.segment_count += 1
        speaker = self._speaker_label(segment)

        if self.logger:
            self.logger.log_segment(segment, speaker)
        if self.display:
            self.display.add_segment(segment, speaker)

    def _error_callback(self, message: str):
        self.error_count += 1
        logger.warning(f"Transcription error: {message}")

    def start(self):
        """Start the transcription system."""
        if self.is_running:
            logger.warning("System already running")
            return

        logger.info("Starting live meeting transcription...")
        self.session_start = time.time()
        self.config.require_credentials()

        try:
            self.audio_capture = AudioCapture(
                sample_rate=self.config.sample_rate,
                device=self.config.mic_device,
            )

            if self.calibrate:
                speech, silence = calibrate_vad(self.audio_capture)
                self.config = self.config.model_copy(
                    update={'speech_threshold': speech, 'silence_threshold': silence}
                )

            matcher = SpeakerMatcher(CorrectionStore(self.corrections_file))

            self.logger = TranscriptionLogger(
                output_file=self.output_file,
                format_type=self.output_format,
                console_output=not self.real_time_display,
                auto_flush=False,
            )
            if self.real_time_display:
                self.display = RealTimeDisplay()

            self.session = LiveTranscriptSession(
                config=self.config,
                audio_capture=self.audio_capture,
                on_segment=self._segment_callback,
                on_error=self._error_callback,
                speakers=self.speakers,
                participant_ids=self.participant_ids,
                matcher=matcher,
            )

            self.logger.start()
            self.session.start()
            self.is_running = True

            # Display status
            print("\n" + "="*60)
            print("LIVE MEETING TRANSCRIPTION ACTIVE")
            print("="*60)
            if self.logger.json_path:
                print(f"JSON output: {self.logger.json_path}")
            if self.logger.csv_path:
                print(f"CSV output: {self.logger.csv_path}")
            print(f"Model: {self.config.model} ({self.config.language})")
            print(f"Microphone device: {self.config.mic_device}")
            print(f"Known speakers: {len(self.speakers)}, participants: {len(self.participant_ids)}")
            print("Press Ctrl+C to stop transcription")
            print("="*60)

            logger.info("System started successfully")

        except Exception as e:
            logger.error(f"Failed to start system: {e}")
            if self.logger:
                self.logger.stop()
            raise

    def run(self):
        """Run the monitoring loop until shutdown."""
        if not self.is_running:
            logger.error("System not started")
            return

        try:
            while self.is_running and not self.shutdown_event.is_set():
                self.shutdown_event.wait(5.0)

                if self.shutdown_event.is_set():
                    break

                stats = self.session.get_stats()
                audio = stats.get('audio', {})
                if not audio.get('open', False):
                    logger.error("Audio capture stopped unexpectedly")
                    break

                if self.logger:
                    self.logger.flush()

                logger.info(f"Stats: {self.segment_count} segments, "
                            f"{stats['pending_chunks']} pending, "
                            f"speaking: {stats['is_speaking']}, "
                            f"level: {stats['audio_level']:.2f}")

        except KeyboardInterrupt:
            logger.info("Received keyboard interrupt")
        except Exception as e:
            logger.error(f"Runtime error: {e}")
        finally:
            self.shutdown()

    def shutdown(self):
        """Shutdown the system gracefully."""
        if not self.is_running:
            return

        logger.info("Shutting down transcription system...")
        self.is_running = False
        self.shutdown_event.set()

        try:
            if self.session:
                self.session.stop(wait=True, timeout=30.0)
                logger.info(f"Final stats: {self.session.get_stats().get('requests')}")

            if self.logger:
                self.logger.stop()

            runtime = time.time() - self.session_start if self.session_start else 0
            logger.info(f"Session completed: {self.segment_count} segments, "
                        f"{self.error_count} errors in {runtime:.1f}s")

        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

        logger.info("Shutdown completed")

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()


def list_audio_devices():
    """List available audio devices."""
    print("Scanning audio devices...")
    devices = AudioCapture.list_audio_devices()

    print("\n=== AUDIO DEVICES ===")
    print("\nMICROPHONE DEVICES (Input):")
    for device in devices['input']:
        print(f"  [{device['id']:2d}] {device['name']}")
        print(f"       {device['channels']} channels, {device['sample_rate']:.0f} Hz")

    if not devices['input']:
        print("  No input devices found")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Live Meeting Transcription",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List available audio devices
  python main.py --list-devices

  # Start transcription (API key from TRANSCRIPTION_API_KEY or OPENAI_API_KEY)
  python main.py

  # German meeting with known speakers and expected participants
  python main.py --lang de --speakers speakers.json --participants anna peter

  # Fixed 10 second chunks, written to CSV
  python main.py --chunk-duration 10000 --no-smart-chunking --output-format csv
        """
    )

    # Device selection
    parser.add_argument('--list-devices', '-l', action='store_true',
                        help='List available audio devices and exit')
    parser.add_argument('--mic-device', '-m', type=int,
                        help='Microphone device ID (use --list-devices to see options)')

    # Output options
    parser.add_argument('--output', '-o', type=str,
                        help='Output file base name (timestamp added if not specified)')
    parser.add_argument('--output-format', type=str, default='json',
                        choices=['json', 'csv', 'both'],
                        help='Output format: json, csv, or both (default: json)')
    parser.add_argument('--real-time-display', action='store_true',
                        help='Show a continuously redrawn transcript view')

    # Audio settings
    parser.add_argument('--sample-rate', '-r', type=int,
                        help='Audio sample rate in Hz (default: 16000)')
    parser.add_argument('--calibrate', action='store_true',
                        help='Measure ambient noise for 2 seconds and adapt VAD thresholds')

    # Chunking and transcription settings
    parser.add_argument('--lang', type=str,
                        help='Language code for transcription (default: en)')
    parser.add_argument('--chunk-duration', type=int,
                        help='Target chunk length in ms (default: 5000)')
    parser.add_argument('--no-smart-chunking', action='store_true',
                        help='Cut chunks on a fixed schedule instead of at speech pauses')
    parser.add_argument('--max-concurrent', type=int,
                        help='Maximum simultaneous transcription requests (default: 4)')
    parser.add_argument('--endpoint', type=str,
                        help='Transcription service URL')
    parser.add_argument('--model', type=str,
                        help='Transcription model name (default: whisper-1)')

    # Speakers
    parser.add_argument('--speakers', type=str, metavar='FILE',
                        help='JSON file with known speaker profiles')
    parser.add_argument('--participants', nargs='+', metavar='ID', default=[],
                        help='Speaker IDs expected in this meeting')
    parser.add_argument('--corrections', type=str, metavar='FILE',
                        help='JSON-lines file for learned speaker corrections')

    # Debug options
    parser.add_argument('--verbose', '-v', action='store_true',
                        help='Enable verbose logging')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    # Configure logging level
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # List devices and exit
    if args.list_devices:
        list_audio_devices()
        return 0

    try:
        config = load_config(
            mic_device=args.mic_device,
            sample_rate=args.sample_rate,
            language=args.lang,
            chunk_duration_ms=args.chunk_duration,
            use_smart_chunking=False if args.no_smart_chunking else None,
            max_concurrent=args.max_concurrent,
            endpoint=args.endpoint,
            model=args.model,
        )
        speakers = load_speakers(args.speakers) if args.speakers else []

        with LiveTranscriber(
            config=config,
            output_file=args.output,
            output_format=args.output_format,
            speakers=speakers,
            participant_ids=args.participants,
            corrections_file=args.corrections,
            calibrate=args.calibrate,
            real_time_display=args.real_time_display,
        ) as transcriber:
            transcriber.run()

        return 0

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except Exception as e:
        logger.error(f"Application failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
