"""Building the DIDL-Lite metadata sent to a renderer with
``SetAVTransportURI``."""


from .xml import XML, NAMESPACES

#: The UPnP class used for each kind of media
OBJECT_CLASSES = {
    "audio": "object.item.audioItem.musicTrack",
    "video": "object.item.videoItem.movie",
    "image": "object.item.imageItem.photo",
}


def build_metadata(metadata):
    """Build a DIDL-Lite document describing one media item.

    Args:
        metadata (dict): Any of ``type`` (one of the keys of
            `OBJECT_CLASSES`), ``title``, ``creator``, ``url`` and
            ``protocolInfo`` (both needed for a ``res`` element) and
            ``subtitlesUrl`` (an srt file).

    Returns:
        str: A unicode string representation of DIDL-Lite XML in the form
        ``'<DIDL-Lite ...>...</DIDL-Lite>'``.
    """
    didl = XML.Element("DIDL-Lite", NAMESPACES)
    item = XML.SubElement(
        didl, "item", {"id": "0", "parentID": "-1", "restricted": "false"}
    )

    if metadata.get("type"):
        XML.SubElement(item, "upnp:class").text = OBJECT_CLASSES.get(metadata["type"])

    if metadata.get("title"):
        XML.SubElement(item, "dc:title").text = metadata["title"]

    if metadata.get("creator"):
        XML.SubElement(item, "dc:creator").text = metadata["creator"]

    if metadata.get("url") and metadata.get("protocolInfo"):
        res = XML.SubElement(item, "res", {"protocolInfo": metadata["protocolInfo"]})
        res.text = metadata["url"]

    subtitles_url = metadata.get("subtitlesUrl")
    if subtitles_url:
        # Samsung renderers look for the sec: elements, others for a
        # second resource
        for tag in ("sec:CaptionInfo", "sec:CaptionInfoEx"):
            XML.SubElement(item, tag, {"sec:type": "srt"}).text = subtitles_url
        res = XML.SubElement(item, "res", {"protocolInfo": "http-get:*:text/srt:*"})
        res.text = subtitles_url

    return XML.tostring(didl, encoding="unicode")
