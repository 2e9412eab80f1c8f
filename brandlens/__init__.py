"""BrandLens: multi-provider prompt testing and brand visibility metrics."""
