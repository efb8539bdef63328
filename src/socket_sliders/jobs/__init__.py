"""Job queue, worker pool and execution pipeline for socket holder meshes.

A submission becomes a durable job row in SQLite; a worker pool claims ready
jobs with a compare-and-swap update, compiles every spec with the external
geometry compiler inside a scratch workspace, packages the meshes and
publishes one artifact per job id. The queue alone decides retries.
"""
