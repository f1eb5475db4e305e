"""Known third-party tracker and analytics domains.

Traffic to these hosts is rarely part of the API being documented, so the
tracker filter drops it by default.
"""

from __future__ import annotations

TRACKER_DOMAINS = frozenset(
    {
        "google-analytics.com",
        "googletagmanager.com",
        "googleadservices.com",
        "doubleclick.net",
        "googlesyndication.com",
        "analytics.google.com",
        "stats.g.doubleclick.net",
        "connect.facebook.net",
        "facebook.com",
        "analytics.twitter.com",
        "ads-twitter.com",
        "bat.bing.com",
        "clarity.ms",
        "hotjar.com",
        "hotjar.io",
        "mixpanel.com",
        "segment.io",
        "segment.com",
        "amplitude.com",
        "heapanalytics.com",
        "fullstory.com",
        "intercom.io",
        "newrelic.com",
        "nr-data.net",
        "sentry.io",
        "datadoghq.com",
        "browser-intake-datadoghq.com",
        "bugsnag.com",
        "optimizely.com",
        "quantserve.com",
        "scorecardresearch.com",
        "crazyegg.com",
        "mouseflow.com",
        "pendo.io",
        "launchdarkly.com",
        "branch.io",
        "appsflyer.com",
        "adjust.com",
        "braze.com",
        "criteo.com",
        "taboola.com",
        "outbrain.com",
        "linkedin.com",
        "snap.licdn.com",
    }
)


def _strip_port(host: str) -> str:
    if host.startswith("["):
        # IPv6 literal
        return host.partition("]")[0][1:]
    name, sep, port = host.rpartition(":")
    if sep and port.isdigit() and ":" not in name:
        return name
    return host


def is_tracker_domain(host: str | None) -> bool:
    """Check whether a host is, or is a subdomain of, a known tracker domain.

    Matching ignores case, a trailing dot and any port.
    """
    if not host:
        return False
    name = _strip_port(host.strip().lower()).rstrip(".")
    while name:
        if name in TRACKER_DOMAINS:
            return True
        _, sep, name = name.partition(".")
        if not sep:
            return False
    return False
