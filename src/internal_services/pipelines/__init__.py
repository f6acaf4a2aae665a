"""Pipeline templates, pipeline runs and the local runner that executes them."""
