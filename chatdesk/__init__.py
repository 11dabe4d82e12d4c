"""ChatDesk: domain-specialised assistant chat with streaming replies and thread presence."""
