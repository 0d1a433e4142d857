"""pagegate: Naver login, one-time redeem codes and page provisioning."""
