"""
Point store clients.

A point store is the external collaborator that owns the toilet records. The
rest of the backend only talks to it through the narrow `PointStore` protocol:
fetch by bounding box, fetch by radius, insert, delete.

- InMemoryPointStore: shapely STRtree over preloaded records (dev/tests)
- DuckDBPointStore: records in a DuckDB table, optional read quota
"""
