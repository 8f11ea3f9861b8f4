"""
Region engine.

The engine answers viewport requests: it keys the viewport, consults the region
cache, coordinates store fetches on a miss, and clusters the result for the
requested zoom.
"""
