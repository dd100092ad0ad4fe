"""Default categories, their descriptions and the seed rules.

The descriptions and keywords are shown to the LLM next to each category
name. They are stored in the category ``attributes`` so users can edit them;
the table below is only the seed and the fallback for categories created
without a description.
"""

# ── Default categories ─────────────────────────────────
# name -> (description, keywords)
DEFAULT_CATEGORIES: dict[str, tuple[str, str]] = {
    "Groceries": (
        "Food and household supplies bought at supermarkets and grocery stores.",
        "supermarket, grocery, Walmart, Costco, Trader Joe's, Whole Foods, Kroger, produce",
    ),
    "Restaurants": (
        "Meals and drinks consumed out: restaurants, cafes, fast food, bars, delivery.",
        "restaurant, dining, coffee, Starbucks, McDonald's, fast food, bar, DoorDash, Uber Eats",
    ),
    "Transportation": (
        "Getting around: public transit, taxis, ride sharing, parking, tolls.",
        "Uber, Lyft, taxi, metro, bus, train, parking, toll",
    ),
    "Gas": (
        "Fuel for vehicles bought at service stations.",
        "gas station, fuel, Shell, Chevron, Exxon, BP, Mobil",
    ),
    "Shopping": (
        "General merchandise: clothing, electronics, home goods, online retail.",
        "Amazon, Target, Best Buy, clothing, electronics, home improvement, retail",
    ),
    "Entertainment": (
        "Leisure: movies, concerts, games, books, streaming rentals, sports events.",
        "movies, cinema, concert, games, books, Netflix, Spotify, tickets",
    ),
    "Bills & Utilities": (
        "Recurring household bills: electricity, water, internet, phone, insurance.",
        "electric, water, utility, internet, phone, cable, insurance",
    ),
    "Healthcare": (
        "Medical costs and health products: doctors, pharmacy, dental, vision.",
        "pharmacy, doctor, dentist, hospital, CVS, Walgreens, vitamins, medicine",
    ),
    "Travel": (
        "Trips away from home: flights, hotels, rental cars, travel agencies.",
        "airline, flight, hotel, Airbnb, Expedia, rental car",
    ),
    "Income": (
        "Money received: salary, payroll, refunds, interest, dividends.",
        "payroll, salary, deposit, interest, dividend, refund",
    ),
    "Transfer": (
        "Money moved between own accounts, loan and credit card payments.",
        "transfer, credit card payment, Venmo, Zelle, withdrawal",
    ),
    "Personal Care": (
        "Personal grooming and wellness services and products.",
        "salon, barber, spa, cosmetics, gym",
    ),
    "Education": (
        "Tuition, courses, school supplies and learning materials.",
        "tuition, school, course, textbook, university",
    ),
    "Subscriptions": (
        "Recurring digital services and memberships.",
        "subscription, membership, streaming, software, monthly plan",
    ),
    "Auto & Transport": (
        "Vehicle ownership: parts, maintenance, accessories.",
        "auto parts, car wash, repair, tires, automotive",
    ),
    "Other": (
        "Spending that fits no other category.",
        "",
    ),
    "Uncategorized": (
        "Not yet classified.",
        "",
    ),
}

# Categories the purchased-item cascade never offers
NON_ITEM_CATEGORIES = {"Income", "Transfer", "Bills & Utilities"}

# ── Seed rules ─────────────────────────────────────────
# (name, regex pattern, category name)
DEFAULT_RULES: list[tuple[str, str, str]] = [
    ("Walmart", "walmart|wal-mart", "Groceries"),
    ("Amazon", "amazon|amzn", "Shopping"),
    ("Gas Stations", "shell|chevron|exxon|bp|mobil", "Gas"),
    ("Utilities", "electric|water|gas company|utility", "Bills & Utilities"),
    ("Fast Food", "mcdonalds|burger king|taco bell|kfc|subway", "Restaurants"),
]


def get_category_description(category_name: str) -> str:
    """Seed description for a default category, empty string otherwise."""
    for name, (description, _) in DEFAULT_CATEGORIES.items():
        if name.lower() == category_name.lower():
            return description
    return ""


def default_attributes(category_name: str) -> dict:
    """Attributes stored with a seeded category."""
    description, keywords = DEFAULT_CATEGORIES.get(category_name, ("", ""))
    return {
        "description": description,
        "keywords": keywords,
        "use_for_items": category_name not in NON_ITEM_CATEGORIES,
    }
