# Generation parameters for the headshot pipeline
# Vision analysis + prompt synthesis: OpenAI chat completions
# Image generation: BFL FLUX API (https://api.bfl.ai/docs)

import os

# Chat model used to describe the uploaded photos and to write the final prompt
VISION_MODEL = os.environ.get("OPENAI_VISION_MODEL", "gpt-4o")
PROMPT_MODEL = os.environ.get("OPENAI_PROMPT_MODEL", "gpt-4o")
MAX_COMPLETION_TOKENS = 500

# BFL endpoint used for text-to-image generation
BFL_API_URL = os.environ.get("BFL_API_URL", "https://api.bfl.ai/v1")
BFL_MODEL_ENDPOINT = os.environ.get("BFL_MODEL_ENDPOINT", "flux-2-klein-9b")

# Image dimensions (must be multiples of 16)
WIDTH = 1024
HEIGHT = 1024

# "png" returns PNG directly, stored as-is in the blob store
OUTPUT_FORMAT = "png"

# Polling for the BFL result
MAX_POLLING_ATTEMPTS = 30
POLLING_INTERVAL = 2

# Every generated prompt is prefixed with this before it is sent to BFL
PROMPT_PREFIX = "Professional headshot: "

# Wall-clock budget for analysis -> prompt -> generation -> storage
GENERATION_TIMEOUT_SECONDS = float(os.environ.get("GENERATION_TIMEOUT_SECONDS", "60"))

# Headshots left pending/processing longer than this are failed by the reaper
STALE_HEADSHOT_SECONDS = int(os.environ.get("STALE_HEADSHOT_SECONDS", "900"))
