"""samps (sample library engine)

Core package for managing a personal library of audio samples: import and
metadata probing, waveform previews, format conversion and persistence.
See `SPEC_FULL.md` and `DESIGN.md` for requirements and architecture.
"""

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml
__version__ = "0.1.0"
