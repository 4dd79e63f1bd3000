"""Constants for Newsletter Detector."""

from pathlib import Path

# --- Config paths ---
CONFIG_DIR = Path.home() / ".newsletter-detector"
CREDENTIALS_PATH = CONFIG_DIR / "credentials.json"
TOKEN_PATH = CONFIG_DIR / "token.json"
DATABASE_PATH = CONFIG_DIR / "detector.db"
CONFIG_PATH = CONFIG_DIR / "config.json"

# --- Gmail API ---
SCOPES = [
    "https://www.googleapis.com/auth/gmail.readonly",
    "https://www.googleapis.com/auth/gmail.send",
]
PAGE_SIZE = 500  # messages per list page

# --- Detection method weights (must sum to 1.0) ---
WEIGHT_HEADER_ANALYSIS = 0.4
WEIGHT_CONTENT_STRUCTURE = 0.3
WEIGHT_SENDER_REPUTATION = 0.2
WEIGHT_USER_FEEDBACK = 0.1

# --- Scoring thresholds ---
NEWSLETTER_THRESHOLD = 0.5
VERIFICATION_BAND_LOW = 0.4
VERIFICATION_BAND_HIGH = 0.6
FEEDBACK_OVERRIDE_CONFIDENCE = 0.9
NEUTRAL_SCORE = 0.5

# --- Score labels ---
SCORE_NEWSLETTER = 0.7
SCORE_LIKELY_NEWSLETTER = 0.5
SCORE_UNCERTAIN = 0.3

# --- Header analysis ---
HEADER_WEIGHT_LIST_UNSUBSCRIBE = 0.5
HEADER_WEIGHT_PLATFORM_MARKERS = 0.3
HEADER_WEIGHT_SENDER_PATTERN = 0.2
PLATFORM_MARKERS_FOR_FULL_SCORE = 3

# Header name prefixes left behind by bulk-mail platforms
PLATFORM_HEADER_MARKERS = [
    "x-campaign",
    "x-mailchimp",
    "x-mc-user",
    "x-cid",
    "x-newsletter",
    "x-cm-campid",
    "x-sg-eid",
    "x-ses-outgoing",
    "x-pm-message-id",
    "x-ib-",
    "x-maropost",
    "x-constantcontact",
    "x-aweber",
    "x-getresponse",
    "x-mailgun",
    "x-klaviyo",
    "x-report-abuse",
    "x-drip",
    "feedback-id",
    "list-id",
]

BULK_PRECEDENCE_VALUES = ("bulk", "list", "junk")

# --- Sender patterns (automated/newsletter addresses) ---
NEWSLETTER_SENDER_PATTERNS = [
    "newsletter@",
    "newsletters@",
    "news@",
    "updates@",
    "update@",
    "noreply@",
    "no-reply@",
    "donotreply@",
    "do-not-reply@",
    "digest@",
    "weekly@",
    "daily@",
    "monthly@",
    "notifications@",
    "info@",
    "hello@",
    "team@",
    "broadcast@",
    "campaign@",
    "marketing@",
    "mailer@",
]

NEWSLETTER_ESP_DOMAINS = [
    "sendgrid.net",
    "mailchimp.com",
    "mcsv.net",
    "mcdlv.net",
    "amazonses.com",
    "constantcontact.com",
    "cmail19.com",
    "cmail20.com",
    "aweber.com",
    "getresponse.com",
    "mailerlite.com",
    "infusionmail.com",
    "drip.com",
    "maropost.com",
    "activecampaign.com",
    "hubspotmail.net",
    "convertkit.com",
    "klaviyomail.com",
    "sendpulse.com",
    "omnisend.com",
    "sendinblue.com",
    "mailgun.org",
]

NEWSLETTER_NAME_INDICATORS = [
    "newsletter",
    "weekly",
    "daily",
    "monthly",
    "digest",
    "update",
    "bulletin",
    "news",
    "roundup",
    "recap",
]

SENDER_SCORE_LOCAL_PART = 0.8
SENDER_SCORE_ESP_DOMAIN = 0.7
SENDER_SCORE_DISPLAY_NAME = 0.6

# --- Content structure analysis ---
BOILERPLATE_PATTERNS = [
    r"\bunsubscribe\b",
    r"\bopt[-\s]?out\b",
    r"view (?:this email )?(?:in|as a?) ?(?:your )?(?:browser|web ?page)",
    r"(?:email|subscription|notification) preferences",
    r"manage (?:your )?(?:email|subscription)s?",
    r"you(?:'re| are) receiving this",
    r"sent to .+@",
    r"copyright \d{4}|©|&copy;",
    r"privacy policy",
    r"forward (?:this|to a friend)",
]
WRAPPER_HINTS = ["header", "masthead", "banner", "logo", "footer", "preheader"]
LINKS_PER_100_WORDS_HIGH = 3.0
CONTENT_WEIGHT_BOILERPLATE = 0.5
CONTENT_WEIGHT_WRAPPER = 0.25
CONTENT_WEIGHT_LINK_DENSITY = 0.25
BOILERPLATE_MATCHES_FOR_FULL_SCORE = 3
WRAPPER_HINTS_FOR_FULL_SCORE = 2
CONTENT_BASE_CONFIDENCE = 0.5
PLAIN_TEXT_SCORE = 0.1
PLAIN_TEXT_CONFIDENCE = 0.5
LONG_BODY_CHARS = 1000

# --- Sender reputation ---
REPUTATION_MIN_CONFIDENCE = 0.3
REPUTATION_CONFIDENCE_SPAN = 0.6
REPUTATION_CONFIDENCE_HALF_LIFE = 3  # observations for half of the span
KNOWN_PROVIDER_SCORE = 0.8
KNOWN_PROVIDER_CONFIDENCE = 0.6

KNOWN_NEWSLETTER_DOMAINS = [
    "substack.com",
    "beehiiv.com",
    "mailchimp.com",
    "sendgrid.net",
    "constantcontact.com",
    "campaignmonitor.com",
    "mailgun.org",
    "aweber.com",
    "getresponse.com",
    "convertkit.com",
    "klaviyo.com",
    "sendinblue.com",
    "buttondown.email",
    "tinyletter.com",
    "ghost.io",
]

# --- User feedback signal ---
FEEDBACK_SENDER_SCORES = {"confirmed": (1.0, 1.0), "rejected": (0.0, 1.0)}
FEEDBACK_DOMAIN_SCORES = {"trusted": (0.95, 0.95), "blocked": (0.05, 0.95)}
FEEDBACK_HISTORY_CONFIDENCE_STEP = 0.1
FEEDBACK_HISTORY_MAX_CONFIDENCE = 0.8
FEEDBACK_NO_HISTORY_CONFIDENCE = 0.1
DOMAIN_PROMOTION_COUNT = 3  # senders from one domain before it is trusted/blocked

# --- Feedback learning ---
FEEDBACK_TYPE_WEIGHTS = {
    "confirm": 1.0,
    "reject": 1.0,
    "verify": 0.8,
    "uncertain": 0.3,
    "ignore": 0.1,
}
SURPRISE_HIGH_CONFIDENCE = 0.8
SURPRISE_LOW_CONFIDENCE = 0.2
SURPRISE_DAMPEN = 0.5
SURPRISE_BOOST = 2.0
REPUTATION_STEP = 0.1
FEATURE_VALUE_SCALE = 10.0
MIN_TRAINING_ITEMS = 10
DEFAULT_FEEDBACK_CONFIDENCE = 0.5

# --- Verification ---
VERIFICATION_EXPIRY_DAYS = 7
MAX_RESEND_COUNT = 3
VERIFICATION_BASE_URL = "https://newsletters.example.com/verify"
VERIFICATION_ACTIONS = ("confirm", "reject", "ignore")

# --- Feedback analysis ---
MIN_DOMAIN_ITEMS = 3
TOP_MISCLASSIFIED_DOMAINS = 5
MIN_PATTERN_ITEMS = 3
TOP_PATTERN_ENTRIES = 10
PERIOD_DAYS = {"day": 1, "week": 7, "month": 30}
