"""Items purchasable with credits."""
