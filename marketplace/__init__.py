"""Settlement core for a multi-vendor club marketplace: orders, rewards, tiers and payouts."""
