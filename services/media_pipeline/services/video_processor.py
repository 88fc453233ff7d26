import os
import subprocess
import json
from typing import Dict, Any, List, Optional, Tuple, Union
from pathlib import Path
import logging
import asyncio
import cv2

from ..config import Settings, VideoPreset
from ..errors import TransformError
from .blob_store import UploadSession
from . import storage_keys

logger = logging.getLogger(__name__)

RENDITION_CONTENT_TYPE = "video/mp4"
POSTER_CONTENT_TYPE = "image/jpeg"
SHRED_CHUNK_BYTES = 1024 * 1024


class VideoProcessor:
    """Transcodes videos into bitrate renditions and extracts poster frames"""

    def __init__(self, settings: Settings):
        self.temp_dir = Path(settings.temp_dir)
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        self.presets: Dict[str, VideoPreset] = settings.video_presets
        self.poster_size: Tuple[int, int] = (settings.poster_width, settings.poster_height)
        self.poster_fraction = settings.poster_timestamp_fraction
        self.ffmpeg_path = self._find_ffmpeg(settings.ffmpeg_path)
        self.ffprobe_path = self._ffprobe_for(self.ffmpeg_path)

    def _find_ffmpeg(self, configured: Optional[str] = None) -> Optional[str]:
        """Find FFmpeg executable"""
        common_paths = [
            'ffmpeg',
            '/usr/bin/ffmpeg',
            '/usr/local/bin/ffmpeg',
            '/opt/homebrew/bin/ffmpeg'
        ]
        if configured:
            common_paths.insert(0, configured)

        for path in common_paths:
            try:
                result = subprocess.run([path, '-version'],
                                        capture_output=True, text=True, timeout=5)
                if result.returncode == 0:
                    return path
            except (subprocess.TimeoutExpired, FileNotFoundError, PermissionError):
                continue

        logger.warning("FFmpeg not found. Video transcoding is unavailable.")
        return None

    def _ffprobe_for(self, ffmpeg_path: Optional[str]) -> Optional[str]:
        if not ffmpeg_path:
            return None
        directory, name = os.path.split(ffmpeg_path)
        return os.path.join(directory, name.replace('ffmpeg', 'ffprobe'))

    async def _run(self, cmd: List[str]) -> Tuple[int, bytes, bytes]:
        """Run a subprocess to completion, killing it if the caller is cancelled"""
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            # Reap the child even if the waiter is cancelled again
            await asyncio.shield(process.wait())
            raise
        return process.returncode, stdout, stderr

    async def get_video_info(self, video_path: str) -> Dict[str, Any]:
        """
        Get video information using FFprobe

        Args:
            video_path: Path to video file

        Returns:
            Dict with success flag and video metadata
        """
        try:
            if not self.ffprobe_path:
                return self._get_basic_video_info(video_path)

            cmd = [
                self.ffprobe_path,
                '-v', 'quiet',
                '-print_format', 'json',
                '-show_format',
                '-show_streams',
                video_path
            ]

            returncode, stdout, stderr = await self._run(cmd)

            if returncode != 0:
                logger.error(f"FFprobe error: {stderr.decode(errors='replace')}")
                return self._get_basic_video_info(video_path)

            probe_data = json.loads(stdout.decode())

            video_stream = None
            for stream in probe_data.get('streams', []):
                if stream.get('codec_type') == 'video':
                    video_stream = stream
                    break

            format_info = probe_data.get('format', {})

            info = {
                'duration': float(format_info.get('duration', 0)),
                'format_name': format_info.get('format_name', ''),
                'bit_rate': int(format_info.get('bit_rate', 0)),
            }

            if video_stream:
                info.update({
                    'width': video_stream.get('width'),
                    'height': video_stream.get('height'),
                    'video_codec': video_stream.get('codec_name'),
                    'frame_rate': self._parse_frame_rate(video_stream.get('r_frame_rate', '0/1')),
                })

            return {
                'success': True,
                'info': info
            }

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error getting video info for {video_path}: {str(e)}")
            return {
                'success': False,
                'error': str(e)
            }

    def _get_basic_video_info(self, video_path: str) -> Dict[str, Any]:
        """Get basic video info using OpenCV as fallback"""
        try:
            cap = cv2.VideoCapture(video_path)

            if not cap.isOpened():
                return {
                    'success': False,
                    'error': 'Could not open video file'
                }

            width = int(cap.get(cv2.CAP_PROP_FRAME_WIDTH))
            height = int(cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
            fps = cap.get(cv2.CAP_PROP_FPS)
            frame_count = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
            duration = frame_count / fps if fps > 0 else 0

            cap.release()

            return {
                'success': True,
                'info': {
                    'width': width,
                    'height': height,
                    'frame_rate': fps,
                    'frame_count': frame_count,
                    'duration': duration,
                    'method': 'opencv_fallback'
                }
            }

        except Exception as e:
            return {
                'success': False,
                'error': str(e)
            }

    def _parse_frame_rate(self, frame_rate_str: str) -> float:
        """Parse frame rate string like '30/1' to float"""
        try:
            if '/' in frame_rate_str:
                num, denom = frame_rate_str.split('/')
                return float(num) / float(denom)
            return float(frame_rate_str)
        except (ValueError, ZeroDivisionError):
            return 0.0

    async def transcode(self, source_path: str, preset: VideoPreset) -> bytes:
        """
        Transcode a video into one rendition

        The output is fragmented MP4 so it can be streamed out of FFmpeg's
        stdout without a seekable file.

        Args:
            source_path: Path to the source video
            preset: Resolution and video/audio bitrates of the rendition

        Returns:
            Encoded rendition bytes
        """
        if not self.ffmpeg_path:
            raise TransformError("FFmpeg is required for video transcoding")

        cmd = [
            self.ffmpeg_path,
            '-v', 'error',
            '-i', source_path,
            '-s', preset.resolution,
            '-c:v', 'libx264',
            '-b:v', preset.video_bitrate,
            '-c:a', 'aac',
            '-b:a', preset.audio_bitrate,
            '-movflags', 'frag_keyframe+empty_moov',
            '-f', 'mp4',
            'pipe:1'
        ]

        returncode, stdout, stderr = await self._run(cmd)

        if returncode != 0:
            message = stderr.decode(errors='replace').strip()
            logger.error(f"FFmpeg transcode error ({preset.resolution}): {message}")
            raise TransformError(
                f"Transcode to {preset.resolution} failed: {message}",
                details={'resolution': preset.resolution, 'returncode': returncode}
            )
        if not stdout:
            raise TransformError(f"Transcode to {preset.resolution} produced no output")

        return stdout

    async def extract_frame(self, source_path: str, timestamp_fraction: float) -> bytes:
        """
        Extract one JPEG frame at a fraction of the video duration

        Args:
            source_path: Path to the source video
            timestamp_fraction: Position in the video, 0.0 (start) to 1.0 (end)

        Returns:
            JPEG bytes sized to the configured poster dimensions
        """
        if not 0.0 <= timestamp_fraction <= 1.0:
            raise ValueError(f"timestamp_fraction must be within [0, 1], got {timestamp_fraction}")

        video_info = await self.get_video_info(source_path)
        duration = video_info['info'].get('duration', 0) if video_info['success'] else 0
        timestamp = max(duration * timestamp_fraction, 0.0)

        if self.ffmpeg_path:
            return await self._extract_frame_ffmpeg(source_path, timestamp)
        return self._extract_frame_opencv(source_path, timestamp_fraction)

    async def _extract_frame_ffmpeg(self, source_path: str, timestamp: float) -> bytes:
        """Extract frame using FFmpeg"""
        width, height = self.poster_size
        cmd = [
            self.ffmpeg_path,
            '-v', 'error',
            '-ss', f'{timestamp:.3f}',
            '-i', source_path,
            '-frames:v', '1',
            '-s', f'{width}x{height}',
            '-f', 'image2pipe',
            '-vcodec', 'mjpeg',
            '-q:v', '2',
            'pipe:1'
        ]

        returncode, stdout, stderr = await self._run(cmd)

        if returncode != 0 or not stdout:
            message = stderr.decode(errors='replace').strip() or 'no frame produced'
            logger.error(f"FFmpeg frame extraction error: {message}")
            raise TransformError(f"Poster extraction failed: {message}")

        return stdout

    def _extract_frame_opencv(self, source_path: str, timestamp_fraction: float) -> bytes:
        """Extract frame using OpenCV as fallback"""
        cap = cv2.VideoCapture(source_path)
        try:
            if not cap.isOpened():
                raise TransformError("Could not open video file")

            total_frames = int(cap.get(cv2.CAP_PROP_FRAME_COUNT))
            frame_number = min(int(total_frames * timestamp_fraction), max(total_frames - 1, 0))
            cap.set(cv2.CAP_PROP_POS_FRAMES, frame_number)

            ret, frame = cap.read()
            if not ret:
                raise TransformError("Could not read frame from video")

            frame = cv2.resize(frame, self.poster_size)
            ok, encoded = cv2.imencode('.jpg', frame, [int(cv2.IMWRITE_JPEG_QUALITY), 90])
            if not ok:
                raise TransformError("Could not encode poster frame")

            return encoded.tobytes()
        finally:
            cap.release()

    async def process_renditions(
        self,
        data: Union[bytes, bytearray],
        owner_id: str,
        filename_stem: str,
        session: UploadSession
    ) -> Dict[str, str]:
        """
        Produce and upload every rendition preset plus the poster frame.

        Returns the variant map (preset name or "poster" to blob key). The
        first failure propagates; keys already written stay recorded in the
        upload session.
        """
        source_path = self.temp_dir / f"{filename_stem}.source"
        try:
            await asyncio.to_thread(source_path.write_bytes, data)

            variants = {}
            for name, preset in self.presets.items():
                rendition = await self.transcode(str(source_path), preset)
                key = storage_keys.video_rendition_key(owner_id, filename_stem, name)
                await session.put(key, rendition, RENDITION_CONTENT_TYPE)
                variants[name] = key
                logger.info(f"Rendition {name} of {filename_stem} uploaded ({len(rendition)} bytes)")

            poster = await self.extract_frame(str(source_path), self.poster_fraction)
            poster_key = storage_keys.video_poster_key(owner_id, filename_stem)
            await session.put(poster_key, poster, POSTER_CONTENT_TYPE)
            variants[storage_keys.POSTER_VARIANT] = poster_key

            return variants

        finally:
            await asyncio.to_thread(self._shred, source_path)

    def _shred(self, path: Path):
        """Overwrite a temp file with zeros, then remove it"""
        try:
            remaining = path.stat().st_size
            with open(path, "r+b") as f:
                while remaining > 0:
                    chunk = min(remaining, SHRED_CHUNK_BYTES)
                    f.write(bytes(chunk))
                    remaining -= chunk
                f.flush()
                os.fsync(f.fileno())
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Error removing temp file {path}: {str(e)}")
