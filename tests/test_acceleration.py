from LogoDetect.processing.acceleration import (
    AccelerationTier, ProbeResult, decoder_variant, first_available, parse_tiers
)


def test_parse_tiers_keeps_order_and_ends_with_software():
    tiers = parse_tiers(['software', 'QSV', 'cuda', 'qsv'])
    assert tiers == (AccelerationTier.QSV, AccelerationTier.CUDA, AccelerationTier.SOFTWARE)


def test_parse_tiers_ignores_unknown_names():
    assert parse_tiers(['vulkan']) == (AccelerationTier.SOFTWARE,)
    assert parse_tiers([]) == (AccelerationTier.SOFTWARE,)


def test_decoder_variant_lookup():
    assert decoder_variant(AccelerationTier.CUDA, 'h264') == 'h264_cuvid'
    assert decoder_variant(AccelerationTier.QSV, 'HEVC') == 'hevc_qsv'
    assert decoder_variant(AccelerationTier.CUDA, 'mjpeg') is None
    assert decoder_variant(AccelerationTier.SOFTWARE, 'h264') is None
    assert decoder_variant(AccelerationTier.QSV, None) is None


def test_first_available_returns_first_success():
    calls = []

    def failing():
        calls.append('gpu')
        return ProbeResult.failure('gpu', 'no device')

    def working():
        calls.append('cpu')
        return ProbeResult.success('cpu', 42)

    def never():
        calls.append('never')
        return ProbeResult.success('never', 0)

    result = first_available((('gpu', failing), ('cpu', working), ('never', never)), "test")
    assert result.ok
    assert result.value == 42
    assert calls == ['gpu', 'cpu']


def test_first_available_reports_last_failure():
    result = first_available(
        (('a', lambda: ProbeResult.failure('a', 'first')), ('b', lambda: ProbeResult.failure('b', 'second'))),
        "test",
    )
    assert not result.ok
    assert result.error.reason == 'second'
    assert str(result.error) == 'b: second'


def test_first_available_with_no_probes():
    result = first_available((), "decoder")
    assert not result.ok
