"""HTTP control surface for wagate."""
