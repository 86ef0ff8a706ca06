"""
Document Control module: versioned documents and member acknowledgments.

Rules:
- Every significant edit produces an immutable DocumentVersion (history is never rewritten)
- An edit may invalidate existing acknowledgments; members must then re-acknowledge
- One acknowledgment row per (document, user); re-acknowledgment updates it in place
- Compliance analytics are derived on demand and never mutate state
"""
