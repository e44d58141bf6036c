from serviceai.utils.sms_segments import is_gsm7, segment_count, split_message


def test_plain_ascii_is_gsm7():
    assert is_gsm7("Your appointment is confirmed.")


def test_accented_spanish_needs_ucs2():
    assert not is_gsm7("¡Hola! Su cita está confirmada")


def test_single_segment_limits():
    assert segment_count("a" * 160) == 1
    assert segment_count("a" * 161) == 2
    assert segment_count("ó" * 70) == 1
    assert segment_count("ó" * 71) == 2


def test_concatenated_segment_sizes():
    assert segment_count("a" * 306) == 2
    assert segment_count("a" * 307) == 3
    assert segment_count("ó" * 134) == 2


def test_short_message_is_not_split():
    assert split_message("Gas leak at 12 Main St") == ["Gas leak at 12 Main St"]


def test_long_message_is_split_with_part_prefixes():
    body = " ".join(["emergency"] * 60)
    parts = split_message(body)
    assert len(parts) > 1
    for index, part in enumerate(parts, start=1):
        assert part.startswith(f"({index}/{len(parts)}) ")
        assert segment_count(part) == 1


def test_whitespace_only_message_is_returned_whole():
    blank = " " * 200
    assert split_message(blank) == [blank]
