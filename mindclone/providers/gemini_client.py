"""
Construct a google-genai client from the environment.
"""

import os


def create_gemini_client(api_key: str | None = None):
    """
    Create a ``google.genai.Client``.

    Authentication (checked in priority order):
    1. api_key parameter (Google AI Studio)
    2. GOOGLE_CLOUD_PROJECT env var (Vertex AI with application default credentials)
    3. GEMINI_API_KEY or GOOGLE_API_KEY (Google AI Studio)
    """
    try:
        from google import genai
    except ImportError:
        raise RuntimeError("Gemini provider requires 'google-genai' library")

    if api_key:
        return genai.Client(api_key=api_key)

    project = os.environ.get("GOOGLE_CLOUD_PROJECT")
    if project:
        location = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-central1")
        return genai.Client(vertexai=True, project=project, location=location)

    key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
    if not key:
        raise ValueError(
            "Gemini authentication required. Set one of:\n"
            "  GEMINI_API_KEY or GOOGLE_API_KEY (Google AI Studio)\n"
            "  GOOGLE_CLOUD_PROJECT (Vertex AI)"
        )
    return genai.Client(api_key=key)
