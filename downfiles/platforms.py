"""Known media platforms by domain; used when the extractor does not name one."""

from __future__ import annotations

from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

PLATFORMS: Dict[str, Tuple[str, ...]] = {
    "youtube": ("youtube.com", "youtu.be", "youtube-nocookie.com"),
    "tiktok": ("tiktok.com", "vm.tiktok.com"),
    "instagram": ("instagram.com", "instagr.am"),
    "facebook": ("facebook.com", "fb.com", "fb.watch"),
    "twitter": ("twitter.com", "x.com", "t.co"),
    "vimeo": ("vimeo.com",),
    "dailymotion": ("dailymotion.com", "dai.ly"),
    "twitch": ("twitch.tv", "clips.twitch.tv"),
    "reddit": ("reddit.com", "v.redd.it", "redd.it"),
    "pinterest": ("pinterest.com", "pin.it"),
    "snapchat": ("snapchat.com",),
    "vk": ("vk.com", "vkvideo.ru"),
    "linkedin": ("linkedin.com",),
    "soundcloud": ("soundcloud.com", "snd.sc"),
    "tumblr": ("tumblr.com",),
    "bbc": ("bbc.com", "bbc.co.uk"),
    "bilibili": ("bilibili.com", "b23.tv"),
    "rumble": ("rumble.com",),
    "odysee": ("odysee.com", "lbry.tv"),
    "streamable": ("streamable.com",),
    "bandcamp": ("bandcamp.com",),
    "mixcloud": ("mixcloud.com",),
    "niconico": ("nicovideo.jp", "nico.ms"),
    "kick": ("kick.com",),
}


def platform_for_url(url: Optional[str]) -> Optional[str]:
    try:
        host = (urlparse(url or "").hostname or "").lower()
    except ValueError:
        return None
    if host.startswith("www."):
        host = host[4:]
    if not host:
        return None
    for platform, domains in PLATFORMS.items():
        if any(host == d or host.endswith("." + d) for d in domains):
            return platform
    return None
