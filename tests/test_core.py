import pytest

from Core import Core
from Storage import CacheAndMemory, load_config


def warm_rerun(sim):
    """Run once to fill the caches, then rerun the same image from a warm reset."""
    sim.run()
    sim.reset(keep_caches=True)
    return sim.run()


def retired_values(records):
    return [(rec.rd_addr, rec.rd_wdata) for rec in records if rec.rd_addr]


class TestScenarios:
    def test_forward_from_execute(self, make_sim):
        sim = make_sim("""
            addi x1, x0, 5
            addi x2, x1, 3
            ebreak
        """)
        records = sim.run()
        assert sim.registers[2] == 8
        assert retired_values(records) == [(1, 5), (2, 8)]
        assert sim.core.stall_count == 0
        assert records[-1].halt

    def test_load_use_stalls_once(self, make_sim):
        sim = make_sim("""
            lw x1, 0x100(x0)
            add x2, x1, x1
            ebreak
        """)
        sim.memory.store_word(0x100, 10)
        sim.image = sim.memory.copy()
        records = sim.run(verify=True)
        assert sim.registers[2] == 20
        assert sim.core.stall_count == 1
        assert records[0].mem_rmask == 0xF
        assert records[0].mem_rdata == 10
        assert records[1].rs1_rdata == 10 and records[1].rs2_rdata == 10

    def test_taken_branch_squashes_fall_through(self, make_sim):
        sim = make_sim("""
            beq x0, x0, 8
            addi x3, x0, 1
            addi x3, x0, 2
            ebreak
        """)
        records = sim.run()
        assert [rec.pc_rdata for rec in records] == [0x0, 0x8, 0xC]
        assert records[0].pc_wdata == 0x8
        assert all(rec.rd_wdata != 1 for rec in records)
        assert sim.registers[3] == 2
        assert sim.core.pipeline_flush_count == 1


class TestTiming:
    def test_one_retirement_per_cycle_when_warm(self, make_sim):
        program = "\n".join(f"addi x{i}, x0, {i}" for i in range(1, 9)) + "\nebreak\n"
        sim = make_sim(program)
        records = warm_rerun(sim)
        assert len(records) == 9
        first = sim.retire_cycles[0]
        assert first == 4
        assert sim.retire_cycles == list(range(first, first + 9))
        assert sim.core.fetch_stall_count == 0

    def test_load_use_costs_one_cycle(self, make_sim):
        independent = make_sim("""
            lw x1, 0x100(x0)
            add x2, x3, x3
            ebreak
        """)
        dependent = make_sim("""
            lw x1, 0x100(x0)
            add x2, x1, x1
            ebreak
        """)
        warm_rerun(independent)
        warm_rerun(dependent)
        assert dependent.core.stall_count == 1
        assert independent.core.stall_count == 0
        assert dependent.clock == independent.clock + 1

    def test_taken_branch_costs_two_cycles(self, make_sim):
        straight = make_sim("""
            addi x1, x0, 1
            addi x2, x0, 2
            ebreak
        """)
        branch = make_sim("""
            beq x0, x0, 12
            nop
            nop
            addi x2, x0, 2
            ebreak
        """)
        warm_rerun(straight)
        warm_rerun(branch)
        assert branch.clock == straight.clock + 2
        assert branch.core.squashed_count == 2

    def test_data_cache_miss_holds_pipeline(self, make_sim):
        sim = make_sim("""
            addi x5, x0, 1
            lw x1, 0x200(x0)
            addi x2, x5, 1
            addi x3, x2, 1
            ebreak
        """)
        records = sim.run(verify=True)
        assert sim.core.mem_stall_count > 0
        assert [rec.order for rec in records] == list(range(5))
        assert sim.registers[3] == 3

    def test_data_cache_miss_holds_fetch_and_tracker(self, make_sim):
        sim = make_sim("""
            addi x5, x0, 1
            lw x1, 0x200(x0)
            addi x2, x5, 1
            addi x3, x2, 1
            ebreak
        """)
        for _ in range(100):
            sim.step()
            if sim.core.mem_stall:
                break
        assert sim.core.mem_stall
        pc = sim.core.pc.pc
        held = sim.core.pipeline_reg["IF/ID"]
        tracker = (sim.core.hazard.ex, sim.core.hazard.mem)
        while sim.core.mem_stall:
            assert sim.core.pc.pc == pc
            assert sim.core.pipeline_reg["IF/ID"] is held
            assert (sim.core.hazard.ex, sim.core.hazard.mem) == tracker
            sim.step()
        sim.run(verify=True)
        assert sim.registers[3] == 3

    def test_no_forwarding_stalls_but_agrees(self, make_sim):
        program = """
            addi x1, x0, 5
            addi x2, x1, 3
            ebreak
        """
        fwd = make_sim(program)
        nofwd = make_sim(program, forwarding=False)
        fwd_records = fwd.run()
        nofwd_records = nofwd.run(verify=True)
        assert fwd_records == nofwd_records
        assert nofwd.core.stall_count == 2


class TestColdFetch:
    """Default hierarchy: 2-cycle memory, four words per refill."""

    STRAIGHT = """
        addi x1, x0, 1
        addi x2, x0, 2
        addi x3, x0, 3
        ebreak
    """

    def test_first_line_miss_timing(self, make_sim):
        sim = make_sim(self.STRAIGHT)
        records = sim.run(verify=True)
        assert records[-1].halt
        assert sim.core.fetch_stall_count == 8
        assert sim.retire_cycles == [12, 13, 14, 15]

    def test_pc_reissues_while_busy(self, make_sim):
        sim = make_sim(self.STRAIGHT)
        for _ in range(8):
            sim.step()
            assert sim.core.fetch_busy
            assert sim.core.pc.pc == 0
            assert sim.candm.l1i.req["address"] == 0
            assert not sim.core.pipeline_reg["IF/ID"]["valid"]

    def test_fetch_resumes_after_busy(self, make_sim):
        sim = make_sim(self.STRAIGHT)
        for _ in range(8):
            sim.step()
        sim.step()
        assert not sim.core.fetch_busy
        assert sim.core.pc.pc == 4
        assert sim.core.pipeline_reg["IF/ID"]["valid"]
        assert sim.core.pipeline_reg["IF/ID"]["pc"] == 0

    def test_redirect_into_refilling_line(self, make_sim):
        sim = make_sim("""
            addi x1, x0, 1
            addi x2, x0, 2
            nop
            beq x0, x0, 12
            addi x3, x0, 3
            addi x3, x0, 4
            addi x4, x0, 6
            ebreak
        """)
        sim.run(verify=True)
        assert sim.retire_cycles == [12, 13, 14, 15, 25, 26]
        assert sim.core.fetch_stall_count == 16
        assert sim.core.pipeline_flush_count == 1
        assert sim.registers[3] == 0
        assert sim.registers[4] == 6

    def test_taken_branch_to_missing_line(self, make_sim):
        sim = make_sim("""
            beq x0, x0, 16
            addi x1, x0, 1
            addi x1, x0, 2
            addi x1, x0, 3
            addi x2, x0, 5
            ebreak
        """)
        sim.run(verify=True)
        assert sim.retire_cycles == [12, 23, 24]
        assert sim.core.fetch_stall_count == 16
        assert sim.registers[1] == 0
        assert sim.registers[2] == 5


class TestTraps:
    def test_misaligned_load_has_no_effect(self, make_sim):
        sim = make_sim("""
            addi x1, x0, 7
            lw x1, 2(x0)
            add x2, x1, x1
            ebreak
        """)
        records = sim.run(stop_on_trap=False, verify=True)
        trap = records[1]
        assert trap.trap
        assert trap.rd_addr == 0 and trap.mem_rmask == 0
        assert trap.pc_wdata == trap.pc_rdata + 4
        assert sim.registers[2] == 14

    def test_misaligned_branch_target_traps(self, make_sim):
        sim = make_sim("""
            beq x0, x0, 6
            addi x1, x0, 1
            ebreak
        """)
        records = sim.run(stop_on_trap=False, verify=True)
        assert records[0].trap
        assert records[0].pc_wdata == 4
        assert sim.registers[1] == 1

    def test_illegal_instruction(self, make_sim):
        sim = make_sim("""
            .word 0xffffffff
            addi x1, x0, 1
            ebreak
        """)
        records = sim.run(stop_on_trap=False, verify=True)
        assert records[0].trap
        assert records[0].rs1_addr == 0 and records[0].rd_addr == 0
        assert sim.registers[1] == 1

    def test_stop_on_trap(self, make_sim):
        sim = make_sim("""
            .word 0xffffffff
            addi x1, x0, 1
            ebreak
        """)
        records = sim.run()
        assert len(records) == 1 and records[0].trap
        assert sim.registers[1] == 0

    def test_nothing_after_halt_retires(self, make_sim):
        sim = make_sim("""
            addi x1, x0, 1
            ecall
            sw x1, 0x100(x0)
            addi x1, x0, 2
        """)
        records = sim.run()
        assert records[-1].halt
        assert len(records) == 2
        assert sim.memory.load_word(0x100) == 0
        assert sim.registers[1] == 1


class TestCore:
    def test_misaligned_entry_point(self):
        candm = CacheAndMemory(config=load_config())
        with pytest.raises(ValueError):
            Core(candm, entry_point=2)

    def test_reset_empties_pipeline(self, make_sim):
        sim = make_sim("addi x1, x0, 1\nebreak\n")
        for _ in range(3):
            sim.step()
        sim.core.reset()
        assert sim.core.pipeline_empty()
        assert sim.core.pc.pc == 0
        assert sim.core.inst_executed == 0

    def test_ipc(self, make_sim):
        sim = make_sim("addi x1, x0, 1\nebreak\n")
        sim.run()
        assert sim.core.get_ipc() == pytest.approx(2 / sim.clock)
        assert 0 < sim.core.get_ipc() <= 1
