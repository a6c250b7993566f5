"""
Overlay tile engine test suite.

- unit/: control points, solver, rasterizer, tile store and registries in isolation
- integration/: the orchestrator pipeline end to end and the offline build script
"""
