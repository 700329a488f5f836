"""Musical ranges, entity defaults and recording constants."""

# MIDI data bytes are 7-bit
MIDI_MIN = 0
MIDI_MAX = 127

# Channel-voice status nibbles
STATUS_NOTE_OFF = 0x80
STATUS_NOTE_ON = 0x90

# Tempo range; out-of-range values are clamped, not rejected
BPM_MIN = 20
BPM_MAX = 300
BPM_DEFAULT = 120

DEFAULT_TIME_SIGNATURE = (4, 4)
DEFAULT_SAMPLE_RATE = 44100
DEFAULT_PROJECT_NAME = "Untitled Project"

# Track
TRACK_TYPES = ("midi", "audio", "instrument")
MIDI_TRACK_TYPES = ("midi", "instrument")
DEFAULT_TRACK_VOLUME = 0.8
DEFAULT_TRACK_PAN = 0.0
TRACK_COLORS = [
    "#6c63ff",
    "#22c55e",
    "#f59e0b",
    "#ef4444",
    "#06b6d4",
    "#ec4899",
    "#84cc16",
    "#f97316",
]

# Clip / note
DEFAULT_CLIP_NAME = "Clip"
DEFAULT_CLIP_BEATS = 4.0
DEFAULT_VELOCITY = 100

# Library
DEFAULT_LIBRARY_CATEGORY = "uncategorized"
DEFAULT_CLIP_TYPE = "midi"
DEFAULT_AUDIO_MIME = "audio/wav"

# Shortest note the recorder will produce, in beats (1/8 beat)
MIN_NOTE_BEATS = 0.125

# Beats per bar used when snapping a finished recording clip
BEATS_PER_BAR = 4

# Standard MIDI File resolution
TICKS_PER_BEAT = 480

# Debounce before an automatic save, in seconds
AUTOSAVE_DELAY = 2.0

# Device hot-plug polling interval in seconds
DEVICE_POLL_INTERVAL = 3.0
