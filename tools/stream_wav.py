"""
Stream a WAV file into a running server as a remote-capture client.

    python tools/stream_wav.py hello.wav --url ws://127.0.0.1:8000/ws

Audio is downmixed and resampled to the pipeline format, cut into frames
and paced in real time. Every JSON message from the server is printed.
"""

import argparse
import asyncio
import json
import wave

import numpy as np
from websockets.asyncio.client import connect

from audio.frame_generator import FrameAssembler
from audio.pcm import float32_to_pcm16le, resample, to_mono
from protocol.binary import encode_c2s_frame
from spec import AUDIO_FRAME_DURATION_S


def load_pcm(path: str) -> bytes:
    with wave.open(path, "rb") as wf:
        if wf.getsampwidth() != 2:
            raise SystemExit(f"{path}: only 16-bit WAV is supported")
        rate = wf.getframerate()
        channels = wf.getnchannels()
        raw = wf.readframes(wf.getnframes())

    samples = np.frombuffer(raw, dtype="<i2").astype(np.float32) / 32768.0
    mono = to_mono(samples.reshape(-1, channels))
    return float32_to_pcm16le(resample(mono, rate))


async def print_messages(ws) -> None:
    async for message in ws:
        if isinstance(message, str):
            print(json.dumps(json.loads(message), indent=None))


async def main(path: str, url: str, tail_s: float) -> None:
    frames = FrameAssembler().push(load_pcm(path))
    print(f"{len(frames)} frames ({len(frames) * AUDIO_FRAME_DURATION_S:.1f}s)")

    async with connect(url) as ws:
        reader = asyncio.create_task(print_messages(ws))

        await ws.send(json.dumps({"type": "START", "config": {}}))
        for frame in frames:
            await ws.send(encode_c2s_frame(sequence_num=frame.sequence_num, pcm_bytes=frame.pcm_bytes))
            await asyncio.sleep(AUDIO_FRAME_DURATION_S)

        # let the last transcripts and AI results arrive
        await asyncio.sleep(tail_s)
        await ws.send(json.dumps({"type": "STOP"}))
        await asyncio.sleep(0.5)
        reader.cancel()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("wav")
    parser.add_argument("--url", default="ws://127.0.0.1:8000/ws")
    parser.add_argument("--tail", type=float, default=5.0)
    args = parser.parse_args()
    asyncio.run(main(args.wav, args.url, args.tail))
