"""Key material handling and XML cryptography."""
