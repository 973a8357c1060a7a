"""LeadPixel: visitor tracking, identity resolution and lead scoring backend."""

__version__ = "1.0.0"
