"""lazy-publish: release only the npm workspace packages that changed."""
