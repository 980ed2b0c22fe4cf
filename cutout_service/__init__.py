"""
Background removal (cutout) service package.

Exposes reusable primitives for building foreground masks with heuristic
builders or an external segmenter, refining them, compositing the alpha
channel, and serving the FastAPI application.
"""
