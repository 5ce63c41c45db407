"""
Image Transform Pipeline

Per-job processing:
1. Remove background  - transparent PNG
2. Studio white background - white PNG with soft shadow

Both transforms run concurrently against the provider; a job succeeds only
if both succeed.
"""
