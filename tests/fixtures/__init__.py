"""
Shared test data for the formguard test suite.

Package Organization:
    File Samples (file_samples.py):
        - Minimal payloads carrying the signature of every registered MIME type
        - Executable headers and malicious SVG documents
        - InMemoryFile builder used by the upload and pipeline tests
"""
