"""Audio endpoints for the guest -> host stream.

- A guest captures its local playback/microphone into an outbound track.
- A host renders each inbound guest track (sound card if possible, else discard).
"""

from __future__ import annotations

import asyncio
import logging
import os
import platform
from dataclasses import dataclass, field
from fractions import Fraction
from queue import Empty, Full, Queue
from typing import Any, Dict, Optional, Tuple

import av
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from aiortc.mediastreams import MediaStreamError

try:
	import numpy as np  # type: ignore
except Exception:  # pragma: no cover
	np = None  # type: ignore

try:
	import sounddevice as sd  # type: ignore
except Exception:  # pragma: no cover
	sd = None  # type: ignore


logger = logging.getLogger(__name__)


SAMPLE_RATE = 48000
FRAME_SAMPLES = 960  # 20 ms at 48 kHz


def _env_str(name: str) -> Optional[str]:
	v = os.environ.get(name, "").strip()
	return v or None


def _parse_device(v: Optional[str]) -> Any:
	if v is None or v == "default":
		return None
	try:
		return int(v)
	except ValueError:
		return v


@dataclass
class AudioDevice:
	backend: str  # "sounddevice", "pulse", "alsa", ...
	device: Any
	label: str = ""


@dataclass
class AudioConfig:
	"""Device selection. ``None`` devices mean the system default."""

	input_device: Optional[AudioDevice] = None
	output_device: Optional[AudioDevice] = None
	prefer_sounddevice: bool = True

	@classmethod
	def from_env(cls) -> "AudioConfig":
		backend = _env_str("HARMONY_AUDIO_BACKEND") or "sounddevice"
		inp = _env_str("HARMONY_AUDIO_INPUT")
		out = _env_str("HARMONY_AUDIO_OUTPUT")
		return cls(
			input_device=AudioDevice(backend=backend, device=_parse_device(inp), label=inp or "") if inp else None,
			output_device=AudioDevice(backend=backend, device=_parse_device(out), label=out or "") if out else None,
			prefer_sounddevice=backend == "sounddevice",
		)


def sounddevice_available() -> bool:
	return sd is not None and np is not None


def frame_to_pcm(frame: av.AudioFrame) -> bytes:
	"""Downmix a decoded frame to interleaved mono int16 bytes."""

	if np is None:
		raise RuntimeError("numpy not available")
	arr = frame.to_ndarray()
	is_float = arr.dtype.kind == "f"
	# Packed formats come as (1, samples*channels); planar as (channels, samples).
	channels = len(frame.layout.channels)
	if arr.ndim == 2 and arr.shape[0] == 1 and channels > 1:
		arr = arr.reshape((-1, channels)).T
	if arr.ndim == 2 and arr.shape[0] > 1:
		arr = arr.mean(axis=0)
	arr = arr.reshape(-1)
	if is_float:
		arr = arr * 32767.0
	if arr.dtype != np.int16:
		arr = np.clip(arr, -32768, 32767).astype(np.int16)
	return arr.tobytes(order="C")


class SoundDeviceAudioTrack(MediaStreamTrack):
	kind = "audio"

	def __init__(
		self,
		*,
		device: Any = None,
		samplerate: int = SAMPLE_RATE,
		channels: int = 1,
		blocksize: int = FRAME_SAMPLES,
	):
		super().__init__()
		if not sounddevice_available():
			raise RuntimeError("sounddevice/numpy not available")

		self._samplerate = int(samplerate)
		self._channels = int(channels)
		self._queue: Queue[bytes] = Queue(maxsize=50)
		self._timestamp = 0
		self._time_base = Fraction(1, self._samplerate)

		def _callback(indata, frames, time, status) -> None:  # noqa: ANN001
			try:
				self._queue.put_nowait(bytes(indata))
			except Full:
				# Consumer too slow; drop the block.
				pass

		self._stream = sd.RawInputStream(
			samplerate=self._samplerate,
			channels=self._channels,
			dtype="int16",
			blocksize=int(blocksize),
			device=device,
			callback=_callback,
		)
		self._stream.start()
		logger.info(
			"local audio using sounddevice os=%s device=%s rate=%s ch=%s",
			platform.system(),
			device,
			self._samplerate,
			self._channels,
		)

	def _next_block(self) -> Optional[bytes]:
		try:
			return self._queue.get(timeout=0.5)
		except Empty:
			return None

	async def recv(self):  # type: ignore[override]
		loop = asyncio.get_running_loop()
		while True:
			if self.readyState != "live":
				raise MediaStreamError
			data = await loop.run_in_executor(None, self._next_block)
			if not data:
				continue
			samples = len(data) // (self._channels * 2)
			arr = np.frombuffer(data, dtype=np.int16)
			if arr.size != samples * self._channels:
				continue
			# Packed s16 frames are shaped (1, samples * channels).
			arr = arr.reshape((1, -1))
			layout = "mono" if self._channels == 1 else "stereo"
			frame = av.AudioFrame.from_ndarray(arr, format="s16", layout=layout)
			frame.sample_rate = self._samplerate
			frame.pts = self._timestamp
			frame.time_base = self._time_base
			self._timestamp += samples
			return frame

	def stop(self) -> None:  # type: ignore[override]
		stream, self._stream = self._stream, None
		try:
			if stream is not None:
				stream.stop()
				stream.close()
		except Exception as e:
			logger.debug("local audio stream close failed: %s", e)
		finally:
			super().stop()


def _try_create_player(preferred: Optional[AudioDevice] = None) -> Tuple[Optional[MediaPlayer], Optional[str]]:
	"""Open an ffmpeg capture, trying the preferred device before the defaults."""

	attempts = []
	if preferred is not None and preferred.backend != "sounddevice":
		attempts.append((preferred.device if preferred.device is not None else "default", preferred.backend))
	attempts += [("default", "pulse"), ("default", "alsa")]

	for device, fmt in attempts:
		try:
			return MediaPlayer(device, format=fmt), fmt
		except Exception as e:
			logger.debug("local audio capture %s:%s unavailable: %s", fmt, device, e)
	return None, None


@dataclass
class LocalAudio:
	"""Owns the capture source so its track stays alive while streaming."""

	player: Optional[MediaPlayer]
	track: Optional[MediaStreamTrack]
	backend: Optional[str] = None

	@classmethod
	def create(cls, config: Optional[AudioConfig] = None) -> "LocalAudio":
		config = config or AudioConfig()
		preferred = config.input_device
		if config.prefer_sounddevice and sounddevice_available():
			device = preferred.device if preferred is not None and preferred.backend == "sounddevice" else None
			try:
				track = SoundDeviceAudioTrack(device=device)
				return cls(player=None, track=track, backend="sounddevice")
			except Exception as e:
				logger.warning("sounddevice capture init failed: %s", e)

		player, backend = _try_create_player(preferred)
		track = player.audio if player else None
		logger.info("local audio backend=%s track=%s", backend, bool(track))
		return cls(player=player, track=track, backend=backend)

	def close(self) -> None:
		t, self.track = self.track, None
		self.player = None
		if t is not None:
			t.stop()


@dataclass
class RemoteAudioSink:
	"""Renders one inbound guest track.

	Plays through sounddevice when available, then ffmpeg outputs, else discards.
	"""

	output: Optional[AudioDevice] = None
	use_sound_card: bool = True
	sink: str = "none"
	_recorder: Optional[Any] = None
	_task: Optional[asyncio.Task[None]] = None
	_started: bool = False

	@property
	def started(self) -> bool:
		return self._started

	async def start(self, track: MediaStreamTrack) -> None:
		if self._started:
			return

		if self.use_sound_card and sounddevice_available() and (self.output is None or self.output.backend == "sounddevice"):
			device = self.output.device if self.output is not None else None
			try:
				stream = sd.RawOutputStream(
					samplerate=SAMPLE_RATE,
					channels=1,
					dtype="int16",
					blocksize=FRAME_SAMPLES,
					device=device,
				)
				stream.start()
			except Exception as e:
				logger.warning("remote audio sounddevice output failed: %s", e)
			else:
				self.sink = f"sounddevice:{device if device is not None else 'default'}"
				logger.info("remote audio sink=%s", self.sink)
				self._task = asyncio.create_task(self._pump(track, stream), name="remote-audio-pump")
				self._started = True
				return

		recorder = self._open_recorder() if self.use_sound_card else None
		if recorder is None:
			recorder = MediaBlackhole()
			self.sink = "blackhole"
		logger.info("remote audio sink=%s track_kind=%s", self.sink, getattr(track, "kind", None))

		recorder.addTrack(track)
		await recorder.start()
		self._recorder = recorder
		self._started = True

	def _open_recorder(self) -> Optional[MediaRecorder]:
		attempts = []
		if self.output is not None and self.output.backend != "sounddevice":
			attempts.append((self.output.device if self.output.device is not None else "default", self.output.backend))
		attempts += [("default", "pulse"), ("default", "alsa")]
		for device, fmt in attempts:
			try:
				recorder = MediaRecorder(device, format=fmt)
			except Exception as e:
				logger.debug("remote audio output %s:%s unavailable: %s", fmt, device, e)
				continue
			self.sink = f"{fmt}:{device}"
			return recorder
		return None

	async def _pump(self, track: MediaStreamTrack, stream: Any) -> None:
		try:
			while True:
				frame = await track.recv()
				if not isinstance(frame, av.AudioFrame):
					continue
				if frame.sample_rate and frame.sample_rate != SAMPLE_RATE:
					logger.debug("remote audio sample_rate=%s (expected %s)", frame.sample_rate, SAMPLE_RATE)
				stream.write(frame_to_pcm(frame))
		except (asyncio.CancelledError, MediaStreamError):
			pass
		except Exception as e:
			logger.info("remote audio pump stopped: %s", e)
		finally:
			try:
				stream.stop()
				stream.close()
			except Exception as e:
				logger.debug("remote audio stream close failed: %s", e)

	async def stop(self) -> None:
		task, self._task = self._task, None
		if task is not None:
			task.cancel()
			try:
				await task
			except asyncio.CancelledError:
				pass
		recorder, self._recorder = self._recorder, None
		self._started = False
		if recorder is not None:
			await recorder.stop()


@dataclass
class SinkRegistry:
	"""One sink per guest; a guest's sink is replaced when it reconnects."""

	output: Optional[AudioDevice] = None
	use_sound_card: bool = True
	sinks: Dict[str, RemoteAudioSink] = field(default_factory=dict)

	async def attach(self, peer_id: str, track: MediaStreamTrack) -> RemoteAudioSink:
		await self.detach(peer_id)
		sink = RemoteAudioSink(output=self.output, use_sound_card=self.use_sound_card)
		await sink.start(track)
		self.sinks[peer_id] = sink
		return sink

	async def detach(self, peer_id: str) -> None:
		sink = self.sinks.pop(peer_id, None)
		if sink is not None:
			await sink.stop()

	async def close(self) -> None:
		for peer_id in list(self.sinks.keys()):
			await self.detach(peer_id)
