"""
Job Queue — Decouples job submission from AI generation.

- Request handlers ENQUEUE jobs (first response, reply, summary, unfinished exchange)
- Workers in one or more processes CLAIM them exclusively and generate text
- Backed by Redis sorted sets + hashes (production) or in-memory dicts (dev)
"""
