# Payments - provider adapters and webhook plumbing
# =================================================
