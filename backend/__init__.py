"""결제 API 서버."""
