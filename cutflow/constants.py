"""Project-wide constants.

Media encoding targets shared by the command builders and the pipeline
actions. Scene outputs are normalised to these values so the final
concatenation can stream-copy without re-encoding mismatches.
"""

# Normalised scene output
TARGET_FPS = 30
DEFAULT_TARGET_WIDTH = 1080
DEFAULT_TARGET_HEIGHT = 1920

# Audio encoding
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "128k"
AUDIO_SAMPLE_RATE = 44100
AUDIO_CHANNELS = 2
BGM_AUDIO_BITRATE = "192k"

# Video encoding presets: (preset, crf)
SPLIT_PRESET = ("fast", 20)
REENCODE_PRESET = ("medium", 23)

# Speed adjustment bounds
MIN_SPEED_FACTOR = 0.5
MAX_SPEED_FACTOR = 5.0
ATEMPO_MIN = 0.5
ATEMPO_MAX = 2.0

# Background music
BGM_VOLUME = 0.15

# Narration candidates generated per dubbed scene
NARRATION_CANDIDATE_COUNT = 3

# Jump-cut trimming
JUMPCUT_SCENE_THRESHOLD = 8.0
JUMPCUT_SCAN_RANGE_SECONDS = 1.3
JUMPCUT_MIN_KEEP_SECONDS = 2.0
JUMPCUT_MIN_TRIM_SECONDS = 0.05

# Storyboard validation
DURATION_TOLERANCE_SECONDS = 0.1

# Media executor
STDERR_CAPTURE_LIMIT_BYTES = 100 * 1024
KILL_GRACE_SECONDS = 5.0

# Error classifier
RETRYABLE_DELAY_SECONDS = 30
SYSTEM_MAX_ATTEMPTS = 2
