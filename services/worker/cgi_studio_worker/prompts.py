DEFAULT_NEGATIVE_PROMPT = 'deformed, distorted, unnatural proportions, melting, morphing, blurry, low quality'

IMAGE_PROMPT_TEMPLATE = """You are a senior CGI artist writing instructions for an image generation model.

Study the two images carefully:
1. Product image: identify the product, its brand, shape and colours.
2. Scene image: note the existing objects, lighting and environment.

User request: "{description}"

Step 1. Find the scene elements that would conflict with the new product (an existing lamp when adding a chandelier, chairs where a sofa goes, a painting on the wall that receives a new one).
Step 2. Remove those conflicting elements completely, including any product of the same kind already present. Leave the area clean.
Step 3. Place the new product where it naturally belongs. Match lighting and shadows exactly. Keep the architecture (ceiling, walls, floor) and every non-conflicting element untouched.

Write direct English instructions for the image model: removal first, then placement."""

IMAGE_PROMPT_FALLBACK = 'Professional CGI integration of product into scene with realistic lighting, shadows, and natural placement. High quality, photorealistic rendering. {description}'

VIDEO_PROMPT_TEMPLATE = """You are a senior CGI director preparing a {duration}-second product video.

Study the product image and the scene. User request: "{description}"

Separate what the scene looks like from how things move. Living beings, if any, must keep natural anatomy; no distortion.

Reply with valid JSON only:
{{
  "imageScenePrompt": "static description of the composed scene",
  "videoMotionPrompt": "motion only: what moves during the {duration} seconds and how the camera behaves",
  "combinedVideoPrompt": "complete prompt for the video model",
  "qualityNegativePrompt": "artifacts to avoid",
  "motionInstructions": "timing and camera notes"
}}"""

IMAGE_SYNTHESIS_TEMPLATE = """Compose a single photorealistic image.

The first image is the product. The second image is the scene.

{prompt}

Keep the product's identity, proportions and branding exact. Output one image."""

VIDEO_DIRECTION_TEMPLATE = """You are a CGI director. Turn this still image into a {duration}-second video for an image-to-video model.

Analyse the image and focus on its main, largest subject. User request: "{description}"

Describe what moves, what action happens, and exactly how the camera behaves. Living beings keep natural anatomy. {audio_hint}

Reply with valid JSON only:
{{
  "videoMotionPrompt": "motion description",
  "combinedVideoPrompt": "complete direction",
  "motionInstructions": "camera movements and timing",
  "audioPrompt": "soundscape for the clip"
}}"""

AUDIO_HINT = 'Also describe a matching soundscape.'
