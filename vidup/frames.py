"""
Frame input: fixed-size 16x16 grayscale blocks, quantized to 16 levels.

Raw streams are read directly. Regular video files are decoded and
downsampled by ffmpeg into the same raw format.
"""

import logging
import subprocess
import tempfile
from contextlib import contextmanager
from fractions import Fraction
from pathlib import Path
from typing import BinaryIO, Iterator, Optional

import numpy as np

from .errors import VidupError

logger = logging.getLogger(__name__)

FRAME_WIDTH = 16
FRAME_HEIGHT = 16
FRAME_SIZE = FRAME_WIDTH * FRAME_HEIGHT

# Clears the low 4 bits so re-encodes of the same footage quantize alike
QUANTIZE_MASK = 0xF0

# Largest possible squared delta of one 8-bit sample, used to normalize
GRAY_RANGE = 256

VIDEO_EXTENSIONS = {'.mp4', '.mkv', '.avi', '.mov'}


def _read_block(stream: BinaryIO, size: int) -> bytes:
    """Read up to size bytes, retrying short reads until EOF."""
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b''.join(chunks)


def normalize_frame(block: bytes) -> np.ndarray:
    """Quantize a raw block to 16 gray levels."""
    return np.frombuffer(block, dtype=np.uint8) & QUANTIZE_MASK


def read_frame(stream: BinaryIO) -> Optional[np.ndarray]:
    """
    Read and normalize one frame.

    Returns None at end of stream. A trailing partial block counts as end of
    stream, never as an error.
    """
    block = _read_block(stream, FRAME_SIZE)
    if len(block) != FRAME_SIZE:
        if block:
            logger.debug("Ignoring %d trailing bytes", len(block))
        return None
    return normalize_frame(block)


def iter_frames(stream: BinaryIO) -> Iterator[np.ndarray]:
    """Yield normalized frames until the stream runs out."""
    while True:
        frame = read_frame(stream)
        if frame is None:
            return
        yield frame


def change_distance(frame1: np.ndarray, frame2: np.ndarray) -> float:
    """Root mean squared pixel delta, normalized by the gray range."""
    delta = frame1.astype(np.int32) - frame2.astype(np.int32)
    squared_sum = int(np.sum(delta * delta))
    return float(np.sqrt(squared_sum / (delta.size * GRAY_RANGE)))


def is_video_file(path) -> bool:
    return Path(path).suffix.lower() in VIDEO_EXTENSIONS


def probe_frame_rate(video_path: str) -> Optional[float]:
    """Get the frame rate of the first video stream using ffprobe."""
    cmd = [
        'ffprobe', '-v', 'error', '-select_streams', 'v:0',
        '-show_entries', 'stream=r_frame_rate',
        '-of', 'default=noprint_wrappers=1:nokey=1', str(video_path)
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=30)
        rate = float(Fraction(result.stdout.strip()))
    except (OSError, subprocess.SubprocessError, ValueError, ZeroDivisionError) as e:
        logger.warning("Could not get frame rate for %s: %s", video_path, e)
        return None
    if rate <= 0:
        return None
    return rate


@contextmanager
def open_video_frames(video_path: str) -> Iterator[BinaryIO]:
    """
    Decode a video with ffmpeg into a raw 16x16 grayscale stream.

    The yielded stream is ffmpeg's stdout. A decoder failure is raised once
    the stream has been consumed.
    """
    cmd = [
        'ffmpeg', '-v', 'error', '-i', str(video_path),
        '-vf', f'scale={FRAME_WIDTH}:{FRAME_HEIGHT}',
        '-pix_fmt', 'gray', '-f', 'rawvideo', 'pipe:'
    ]
    # Errors go to a file, a pipe nobody drains would stall the decoder
    with tempfile.TemporaryFile() as stderr_file:
        try:
            proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=stderr_file)
        except OSError as e:
            raise VidupError(f"Could not start ffmpeg: {e}") from e

        completed = False
        try:
            yield proc.stdout
            completed = True
        finally:
            if not completed and proc.poll() is None:
                proc.kill()
            proc.stdout.close()
            returncode = proc.wait()
            stderr_file.seek(0)
            stderr = stderr_file.read().decode(errors='replace').strip()

    if returncode != 0:
        raise VidupError(f"ffmpeg failed on {video_path}: {stderr or returncode}")
