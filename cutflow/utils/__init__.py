"""Cross-cutting utilities: logging, paths, timecodes, subtitles and ffmpeg plumbing.

Utilities are pure functions or small services without pipeline logic.

Modules:
    media_executor: bounded, cancellable ffmpeg/ffprobe subprocess runner.
    media_commands: pure ffmpeg argument builders and output parsers.
"""
