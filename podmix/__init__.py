"""PODMIX — Two-speaker podcast production pipeline.

Clap sync → denoise → loudness → dynamics → mix → silence → BGM → endscene → export.
"""

__version__ = "0.1.0"
