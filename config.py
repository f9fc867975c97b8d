# config.py
import os
import fractions
from dotenv import load_dotenv

load_dotenv()

# --- Signaling Server ---
SIGNALING_SERVER_URL = os.getenv("SIGNALING_SERVER_URL", "http://10.10.10.124:3500")
CALLER_ID = os.getenv("CALLER_ID", "666666")

# --- STUN / TURN Servers ---
STUN_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun2.l.google.com:19302",
]
TURN_SERVERS = [url for url in os.getenv("TURN_SERVERS", "").split(",") if url]
TURN_USERNAME = os.getenv("TURN_USERNAME")
TURN_CREDENTIAL = os.getenv("TURN_CREDENTIAL")

ICE_SERVERS = [{"urls": url} for url in STUN_SERVERS] + [
    {"urls": url, "username": TURN_USERNAME, "credential": TURN_CREDENTIAL}
    for url in TURN_SERVERS
]

# --- Local Media ---
MEDIA_SOURCE = os.getenv("MEDIA_SOURCE", "synthetic")  # synthetic | /dev/video0 | test.mp4 | default:none
MEDIA_FORMAT = os.getenv("MEDIA_FORMAT") or None  # v4l2 | avfoundation | dshow
MEDIA_OPTIONS = {"framerate": "30", "video_size": "640x480"}

# --- Synthetic Media ---
AUDIO_SAMPLE_RATE = 48000
AUDIO_TIME_BASE = fractions.Fraction(1, AUDIO_SAMPLE_RATE)
SAMPLES_PER_FRAME = int(AUDIO_SAMPLE_RATE * 0.02) # 20ms frame
TONE_FREQUENCY_HZ = 440
TONE_AMPLITUDE = 0.2
VIDEO_WIDTH = 640
VIDEO_HEIGHT = 480

# --- Loopback Signaling ---
LOOPBACK_ANSWER_DELAY_S = float(os.getenv("LOOPBACK_ANSWER_DELAY_S", "1.0"))
