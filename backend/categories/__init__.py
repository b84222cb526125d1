"""
POI categories: tagged identifiers and the registry of per-category metadata.

The shipped definitions live next to this module (`*.yaml`) so they install with the
package; `TRAILPOI_CATEGORIES_DIR` points the default registry elsewhere.
"""
