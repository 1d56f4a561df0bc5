"""Tests for whole-protocol compilation."""

import json
import os

import pytest

from cmdproto.compiler.classifier import DispatchRoute, ExclusionReason, TransportDenial
from cmdproto.compiler.compiler import CompilerOptions, compile_protocol
from cmdproto.compiler.errors import ConfigurationError, ModelError
from cmdproto.compiler.fingerprint import ProtocolRevision
from cmdproto.compiler.model import load_model, read_model
from cmdproto.compiler.packer import StructPacker

FILE_DIR = os.path.dirname(os.path.realpath(__file__))


@pytest.fixture
def compiled(model):
    return compile_protocol(model)


def describe_layouts():
    def pads_handle_before_doubles(expect, compiled):
        layout = compiled.command("CMD_CORE_VISUAL_SETOFFSET").layout

        expect(layout.as_tuples()) == [
            ("Handle", 0, 4, "field"),
            ("padAlignment0", 4, 4, "pad"),
            ("OffsetX", 8, 8, "field"),
            ("OffsetY", 16, 8, "field"),
        ]
        expect(layout.total_size) == 24

    def adds_trailing_pad(expect, compiled):
        layout = compiled.command("CMD_CORE_HWNDTARGET_CREATE").layout

        expect(layout.as_tuples()) == [
            ("Handle", 0, 4, "field"),
            ("padAlignment0", 4, 4, "pad"),
            ("Hwnd", 8, 8, "field"),
            ("Flags", 16, 4, "field"),
            ("padAlignment1", 20, 4, "pad"),
        ]
        expect(layout.total_size) == 24

    def packs_tighter_on_four_byte_hosts(expect):
        model = load_model(f"{FILE_DIR}/protocol.json", StructPacker(pointer_width=4))
        compiled = compile_protocol(model, CompilerOptions(pointer_width=4))
        layout = compiled.command("CMD_CORE_HWNDTARGET_CREATE").layout

        expect(layout.as_tuples()) == [
            ("Handle", 0, 4, "field"),
            ("Hwnd", 4, 8, "field"),
            ("Flags", 12, 4, "field"),
        ]
        expect(layout.total_size) == 16

    def pads_short_tail_of_payload_commands(expect, compiled):
        c = compiled.command("CMD_CORE_GLYPHRUN_CREATE")

        expect(c.command.has_payload) == True
        expect(c.layout.as_tuples()[-1]) == ("padAlignment0", 6, 2, "pad")
        expect(c.layout.total_size) == 8

    def gives_empty_commands_the_minimum_size(expect, compiled):
        layout = compiled.command("CMD_TRANSPORT_SYNCFLUSHREQUEST").layout

        expect(layout.entries) == ()
        expect(layout.total_size) == 1

    def uses_configured_empty_struct_size(expect, model):
        compiled = compile_protocol(model, CompilerOptions(empty_struct_size=4))

        expect(compiled.command("CMD_TRANSPORT_SYNCFLUSHREQUEST").layout.total_size) == 4

    def embeds_value_types(expect, compiled):
        layout = compiled.command("CMD_CORE_VISUAL_SETGRADIENTSTOP").layout

        expect(layout.as_tuples()[-1]) == ("Stop", 8, 24, "field")
        expect(layout.total_size) == 32

    def honours_declared_alignment(expect, compiled):
        layout = compiled.command("CMD_CORE_CHANNEL_SETCLEARCOLOR").layout

        expect(layout.total_size) == 16
        expect(layout.max_alignment) == 4

    def interleaves_animation_handles_in_updates(expect, compiled):
        layout = compiled.command("CMD_CORE_SOLIDCOLORBRUSH_UPDATE").layout

        expect(layout.as_tuples()) == [
            ("Handle", 0, 4, "field"),
            ("padAlignment0", 4, 4, "pad"),
            ("Opacity", 8, 8, "field"),
            ("hOpacityAnimations", 16, 4, "field"),
            ("Color", 20, 16, "field"),
            ("hColorAnimations", 36, 4, "field"),
        ]
        expect(layout.total_size) == 40

    def pads_after_each_animation_handle_when_needed(expect, compiled):
        layout = compiled.command("CMD_CORE_TRANSLATETRANSFORM_UPDATE").layout

        expect([(e.name, e.offset) for e in layout.entries]) == [
            ("Handle", 0),
            ("padAlignment0", 4),
            ("X", 8),
            ("hXAnimations", 16),
            ("padAlignment1", 20),
            ("Y", 24),
            ("hYAnimations", 32),
            ("padAlignment2", 36),
        ]
        expect(layout.total_size) == 40

    def packs_resources(expect, compiled):
        layouts = {r.resource.name: r.layout for r in compiled.resources}

        expect(layouts["GradientStop"].total_size) == 24
        expect(layouts["Visual"].total_size) == 4
        expect(layouts["Brush"].total_size) == 1


def describe_dispatch():
    def compiles_every_command(expect, compiled):
        expect(len(compiled.commands)) == 26
        expect(sum(1 for c in compiled.commands if c.dispatch.is_dispatched)) == 19

    def routes_special_handlers(expect, compiled):
        for name, handler in [
            ("CMD_TRANSPORT_SYNCFLUSHREQUEST", "TransportSyncFlushRequest"),
            ("CMD_TRANSPORT_REQUESTTIER", "TransportRequestTier"),
            ("CMD_CORE_PARTITION_REGISTERFORNOTIFICATIONS", "PartitionRegisterForNotifications"),
            ("CMD_CORE_CHANNEL_SETCLEARCOLOR", "ChannelSetClearColor"),
            ("CMD_CORE_HWNDTARGET_CREATE", "HwndTargetCreate"),
            ("CMD_CORE_GLYPHRUN_CREATE", "GlyphRunCreate"),
            ("CMD_CORE_TARGET_CAPTUREBITS", "TargetCaptureBits"),
        ]:
            d = compiled.command(name).dispatch
            expect(d.route) == DispatchRoute.SPECIAL_HANDLER
            expect(d.handler) == handler

    def routes_resource_commands(expect, compiled):
        d = compiled.command("CMD_CORE_VISUAL_SETOFFSET").dispatch
        update = compiled.command("CMD_CORE_VISUAL_UPDATE").dispatch

        expect(d.route) == DispatchRoute.RESOURCE_ROUTED
        expect(d.resource_type) == "Visual"
        expect(d.handle_field) == "Handle"
        expect(update.route) == DispatchRoute.RESOURCE_ROUTED
        expect(update.validation) == None

    def excludes_commands(expect, compiled):
        for name, reason in [
            ("CMD_CORE_VISUAL_SETRENDEROPTIONS", ExclusionReason.LEGACY),
            ("CMD_CORE_BITMAP_SOURCEMODIFIED", ExclusionReason.LEGACY),
            ("CMD_RENDERDATA_DRAWLINE", ExclusionReason.RENDER_DATA),
            ("CMD_CORE_DRAWRECTANGLE", ExclusionReason.RENDER_DATA_INSTRUCTION),
            ("CMD_DWM_WINDOW_SETWINDOWTRANSFORM", ExclusionReason.SEPARATE_TRANSPORT),
            ("CMD_REDIRECTION_SURFACE_SETSURFACE", ExclusionReason.SEPARATE_TRANSPORT),
            ("CMD_REDIRECTION_SURFACE_PRESENT", ExclusionReason.SEPARATE_TRANSPORT),
        ]:
            d = compiled.command(name).dispatch
            expect(d.route) == DispatchRoute.EXCLUDED
            expect(d.exclusion) == reason

    def validates_resource_handles(expect, compiled):
        for name, fields in [
            ("CMD_CORE_VISUAL_SETTRANSFORM", ("hTransform",)),
            ("CMD_CORE_VISUAL_SETCONTENT", ("hContent",)),
            ("CMD_CORE_VISUAL_INSERTCHILDAT", ("hChild",)),
            ("CMD_CORE_VISUAL_REMOVECHILD", ("hChild",)),
            ("CMD_CORE_VISUAL_SETTRANSFORMS", ()),
            ("CMD_CORE_VISUAL_SETGRADIENTSTOP", ()),
            ("CMD_CORE_VISUAL_SETOFFSET", ()),
        ]:
            expect(compiled.command(name).dispatch.validation.fields) == fields

    def keeps_per_command_denial_policy(expect, compiled):
        expect(compiled.command("CMD_CORE_CHANNEL_SETCLEARCOLOR").dispatch.transport_denial) == (
            TransportDenial.SILENT_NOOP
        )
        expect(compiled.command("CMD_CORE_VISUAL_SETOFFSET").dispatch.transport_denial) == (
            TransportDenial.HARD_FAIL
        )

    def raises_key_error_for_unknown_struct(expect, compiled):
        with pytest.raises(KeyError):
            compiled.command("CMD_CORE_VISUAL_EXPLODE")


def describe_fingerprint():
    def is_stable_across_runs(expect, model):
        expect(compile_protocol(model).fingerprint) == compile_protocol(model).fingerprint

    def follows_pointer_width(expect, model):
        narrow_model = load_model(f"{FILE_DIR}/protocol.json", StructPacker(pointer_width=4))
        narrow = compile_protocol(narrow_model, CompilerOptions(pointer_width=4))

        expect(narrow.fingerprint.primary) != compile_protocol(model).fingerprint.primary

    def applies_revisions(expect, model):
        base = compile_protocol(model).fingerprint
        bumped = compile_protocol(model, revisions=ProtocolRevision(secondary=1)).fingerprint

        expect(bumped.primary) == base.primary
        expect(bumped.secondary) != base.secondary


def describe_options():
    def rejects_invalid_pointer_width(expect, model):
        with pytest.raises(ConfigurationError):
            compile_protocol(model, CompilerOptions(pointer_width=2))

    def rejects_invalid_empty_struct_size(expect, model):
        with pytest.raises(ConfigurationError):
            compile_protocol(model, CompilerOptions(empty_struct_size=0))

    def reads_options_from_dict(expect):
        options = CompilerOptions.from_dict({"pointer_width": 4, "diagnostic_build": False})

        expect(options.pointer_width) == 4
        expect(options.diagnostic_build) == False
        expect(options.empty_struct_size) == 1


def describe_to_dict():
    def serializes_to_json(expect, compiled):
        data = json.loads(json.dumps(compiled.to_dict()))

        expect(len(data["commands"])) == 26
        expect(data["fingerprint"]["primary"]) == compiled.fingerprint.primary
        expect(data["options"]["pointer_width"]) == 8

    def generates_diagnostic_checks(expect, compiled):
        data = compiled.command("CMD_CORE_VISUAL_SETTRANSFORM").to_dict(compiled.options)

        expect(data["dispatch"]["generated_denial"]) == "hard_fail"
        expect(data["dispatch"]["validation_compiled"]) == True
        expect(data["dispatch"]["validation"]) == ["hTransform"]

    def drops_diagnostic_checks_in_release_builds(expect, model):
        compiled = compile_protocol(model, CompilerOptions(diagnostic_build=False))
        data = compiled.command("CMD_CORE_VISUAL_SETTRANSFORM").to_dict(compiled.options)

        expect(data["dispatch"]["generated_denial"]) == "silent_noop"
        expect(data["dispatch"]["validation_compiled"]) == False

    def leaves_excluded_commands_without_denial(expect, compiled):
        data = compiled.command("CMD_RENDERDATA_DRAWLINE").to_dict(compiled.options)

        expect(data["dispatch"]["route"]) == "excluded"
        expect(data["dispatch"]["generated_denial"]) == None
        expect(data["dispatch"]["validation_compiled"]) == False


def embedded_stop():
    return {
        "resources": [
            {
                "name": "Stop",
                "value_type": True,
                "fields": [
                    {"name": "A", "type": "uint32"},
                    {"name": "B", "type": "float64"},
                ],
            },
            {"name": "Ramp", "fields": [{"name": "First", "type": "Stop"}]},
        ],
        "commands": [
            {
                "name": "SetStop",
                "target": "Visual",
                "fields": [
                    {"name": "Handle", "type": "ResourceHandle"},
                    {"name": "Stop", "type": "Stop"},
                ],
            }
        ],
    }


def describe_model_checks():
    def rejects_value_types_sized_for_another_host(expect):
        model = read_model(embedded_stop())

        with pytest.raises(ConfigurationError) as exinfo:
            compile_protocol(model, CompilerOptions(pointer_width=4))

        expect(str(exinfo.value)).includes("embeds Stop as 16 bytes")

    def accepts_value_types_sized_for_the_same_host(expect):
        model = read_model(embedded_stop(), StructPacker(pointer_width=4))
        compiled = compile_protocol(model, CompilerOptions(pointer_width=4))
        resources = {r.resource.name: r.layout for r in compiled.resources}

        expect(resources["Stop"].total_size) == 12
        expect(compiled.command("CMD_CORE_VISUAL_SETSTOP").layout.entries[-1].size) == 12

    def rejects_resource_routed_command_without_handle(expect):
        model = read_model({"commands": [{"name": "Flush", "target": "Visual"}]})

        with pytest.raises(ModelError) as exinfo:
            compile_protocol(model)

        expect(str(exinfo.value)).includes("CMD_CORE_VISUAL_FLUSH")

    def rejects_resource_routed_command_without_target(expect):
        handle = {"name": "Handle", "type": "ResourceHandle"}
        model = read_model({"commands": [{"name": "Flush", "fields": [handle]}]})

        with pytest.raises(ModelError):
            compile_protocol(model)
