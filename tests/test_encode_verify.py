# SPDX-License-Identifier: MPL-2.0
# Copyright (c) 2025-2026 Aryan Ameri
#
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

from __future__ import annotations

from pathlib import Path

import pytest

from encode_verify import encode_with_gain_map, extract_gain_map, strategy_order
from gainmap_config import EncoderStrategy, ProcessingConfig
from gainmap_errors import EncodeError, GainMapExtractionError, VerificationError
from maker_apple import choose_maker

LEGACY = EncoderStrategy.LEGACY
TEN_BIT = EncoderStrategy.TEN_BIT


@pytest.fixture
def pair(hdr_factory, image_factory):
    hdr = hdr_factory(peak=4.0)
    sdr = image_factory(hdr.pixels[..., 0].clip(0.0, 1.0), color_space="display-p3")
    return sdr, hdr


@pytest.fixture
def maker():
    return choose_maker(4.0)[1]


def _auto_config(**kwargs) -> ProcessingConfig:
    return ProcessingConfig(max_concurrency=1, encoder_strategy=EncoderStrategy.AUTO, **kwargs)


@pytest.mark.parametrize(
    ("machine", "expected"),
    [
        ("arm64", (TEN_BIT, LEGACY)),
        ("aarch64", (TEN_BIT, LEGACY)),
        ("x86_64", (LEGACY, TEN_BIT)),
        ("AMD64", (LEGACY, TEN_BIT)),
        ("riscv64", (LEGACY, TEN_BIT)),
        ("", (LEGACY, TEN_BIT)),
    ],
)
def test_auto_strategy_order(machine: str, expected: tuple[EncoderStrategy, ...]) -> None:
    assert strategy_order(EncoderStrategy.AUTO, machine) == expected


@pytest.mark.parametrize("strategy", [LEGACY, TEN_BIT])
def test_pinned_strategy_is_tried_alone(strategy: EncoderStrategy) -> None:
    assert strategy_order(strategy, "arm64") == (strategy,)


def test_custom_strategy_table() -> None:
    table = {"ppc64le": (TEN_BIT, LEGACY)}
    assert strategy_order(EncoderStrategy.AUTO, "ppc64le", table) == (TEN_BIT, LEGACY)


def test_writes_with_first_strategy(tmp_path: Path, memory_engine, pair, maker) -> None:
    engine = memory_engine()
    sdr, hdr = pair
    out = tmp_path / "out.jxl"

    result = encode_with_gain_map(sdr, hdr, maker, out, engine, _auto_config(), machine="x86_64")

    assert result.strategy is LEGACY
    assert result.attempts == 1
    entry = engine.containers[out]
    assert entry["gain_map"] is not None
    assert entry["quality"] == pytest.approx(0.97)
    assert entry["base"].properties["maker_apple"] == {"33": maker.maker33, "48": maker.maker48}


def test_maker_fields_merge_into_existing_properties(tmp_path: Path, memory_engine, pair, maker) -> None:
    engine = memory_engine()
    sdr, hdr = pair
    hdr = hdr.with_properties({"maker_apple": {"12": 3.0}, "pixel_width": 8})
    out = tmp_path / "out.jxl"

    encode_with_gain_map(sdr, hdr, maker, out, engine, _auto_config(), machine="x86_64")

    properties = engine.containers[out]["base"].properties
    assert properties["pixel_width"] == 8
    assert properties["maker_apple"]["12"] == 3.0
    assert properties["maker_apple"]["48"] == maker.maker48
    assert "maker_apple" not in sdr.properties


def test_retries_after_writer_exception(tmp_path: Path, memory_engine, pair, maker) -> None:
    engine = memory_engine(fail_strategies=[TEN_BIT])
    messages: list[str] = []
    sdr, hdr = pair
    out = tmp_path / "out.jxl"

    result = encode_with_gain_map(sdr, hdr, maker, out, engine, _auto_config(), messages.append,
                                  machine="arm64")

    assert result.strategy is LEGACY
    assert result.attempts == 2
    assert engine.final_writes == [TEN_BIT, LEGACY]
    assert any("retrying with legacy" in m for m in messages)


def test_retries_when_gain_map_missing(tmp_path: Path, memory_engine, pair, maker) -> None:
    engine = memory_engine(drop_gain_map_strategies=[LEGACY])
    messages: list[str] = []
    sdr, hdr = pair
    out = tmp_path / "out.jxl"

    result = encode_with_gain_map(sdr, hdr, maker, out, engine, _auto_config(), messages.append,
                                  machine="x86_64")

    assert result.strategy is TEN_BIT
    assert engine.containers[out]["gain_map"] is not None
    assert any("produced no gain map" in m for m in messages)


def test_last_strategy_exception_is_export_failure(tmp_path: Path, memory_engine, pair, maker) -> None:
    engine = memory_engine(fail_strategies=[LEGACY, TEN_BIT])
    sdr, hdr = pair

    with pytest.raises(EncodeError, match=r"Export failed \(ten_bit\)"):
        encode_with_gain_map(sdr, hdr, maker, tmp_path / "out.jxl", engine, _auto_config(),
                             machine="x86_64")


def test_last_strategy_without_gain_map_is_verification_failure(
    tmp_path: Path, memory_engine, pair, maker
) -> None:
    engine = memory_engine(drop_gain_map_strategies=[LEGACY, TEN_BIT])
    sdr, hdr = pair
    out = tmp_path / "out.jxl"

    with pytest.raises(VerificationError, match="gain map missing after write"):
        encode_with_gain_map(sdr, hdr, maker, out, engine, _auto_config(), machine="x86_64")
    assert not out.exists()


def test_verification_can_be_disabled(tmp_path: Path, memory_engine, pair, maker) -> None:
    engine = memory_engine(drop_gain_map_strategies=[LEGACY])
    sdr, hdr = pair
    out = tmp_path / "out.jxl"

    result = encode_with_gain_map(sdr, hdr, maker, out, engine,
                                  _auto_config(verify_after_write=False), machine="x86_64")

    assert result.strategy is LEGACY
    assert engine.final_writes == [LEGACY]
    assert out.exists()


def test_extraction_failure_is_reported(tmp_path: Path, memory_engine, pair) -> None:
    engine = memory_engine(fail_temp_write=True)
    sdr, hdr = pair
    with pytest.raises(GainMapExtractionError, match="Failed to build temp container"):
        extract_gain_map(sdr, hdr, engine, LEGACY, tmp_path)


def test_extraction_reads_back_gain_map(tmp_path: Path, memory_engine, pair) -> None:
    engine = memory_engine()
    sdr, hdr = pair
    gain_map = extract_gain_map(sdr, hdr, engine, LEGACY, tmp_path)
    assert gain_map.extent == sdr.extent


def test_extraction_failure_aborts_before_final_write(tmp_path: Path, memory_engine, pair, maker) -> None:
    engine = memory_engine(fail_temp_write=True)
    sdr, hdr = pair
    with pytest.raises(GainMapExtractionError):
        encode_with_gain_map(sdr, hdr, maker, tmp_path / "out.jxl", engine, _auto_config(),
                             machine="x86_64")
    assert engine.final_writes == []


def test_failed_last_writer_removes_earlier_output(tmp_path: Path, memory_engine, pair, maker) -> None:
    engine = memory_engine(drop_gain_map_strategies=[LEGACY], fail_strategies=[TEN_BIT])
    sdr, hdr = pair
    out = tmp_path / "out.jxl"

    with pytest.raises(EncodeError, match=r"Export failed \(ten_bit\)"):
        encode_with_gain_map(sdr, hdr, maker, out, engine, _auto_config(), machine="x86_64")

    assert engine.final_writes == [LEGACY, TEN_BIT]
    assert not out.exists()


def test_extraction_falls_back_to_next_strategy(tmp_path: Path, memory_engine, pair, maker) -> None:
    engine = memory_engine(fail_temp_strategies=[TEN_BIT])
    messages: list[str] = []
    sdr, hdr = pair
    out = tmp_path / "out.jxl"

    result = encode_with_gain_map(sdr, hdr, maker, out, engine, _auto_config(), messages.append,
                                  machine="arm64")

    assert engine.temp_writes == [TEN_BIT, LEGACY]
    assert result.strategy is TEN_BIT
    assert engine.containers[out]["gain_map"] is not None
    assert any("could not build the gain map" in m for m in messages)


def test_extraction_fails_when_every_strategy_fails(tmp_path: Path, memory_engine, pair, maker) -> None:
    engine = memory_engine(fail_temp_strategies=[LEGACY, TEN_BIT])
    sdr, hdr = pair

    with pytest.raises(GainMapExtractionError, match="Failed to build temp container"):
        encode_with_gain_map(sdr, hdr, maker, tmp_path / "out.jxl", engine, _auto_config(),
                             machine="x86_64")
    assert engine.temp_writes == [LEGACY, TEN_BIT]
    assert engine.final_writes == []
