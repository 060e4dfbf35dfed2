"""Back-office API: rate limiting, security monitoring and performance metrics"""
