import os
from dotenv import load_dotenv
load_dotenv()

GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")

# Gemini models - structured extraction vs. Live API transcription
EXTRACTION_MODEL = os.getenv("EXTRACTION_MODEL", "gemini-2.5-flash")
LIVE_MODEL = os.getenv("LIVE_MODEL", "gemini-2.5-flash-native-audio-preview-09-2025")

# Live API expects 16-bit PCM, 16kHz mono
SAMPLE_RATE = 16000
FRAME_SIZE = 4096
AUDIO_MIME_TYPE = f"audio/pcm;rate={SAMPLE_RATE}"
MICROPHONE_DEVICE = os.getenv("MICROPHONE_DEVICE") or None
if MICROPHONE_DEVICE is not None and MICROPHONE_DEVICE.isdigit():
    MICROPHONE_DEVICE = int(MICROPHONE_DEVICE)  # device index rather than name

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8080))
